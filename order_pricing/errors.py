from __future__ import annotations


class PricingError(Exception):
    pass


class StoreError(PricingError):
    """Document store call failed (unavailable, conflicting write, ...)."""


class DocumentNotFound(StoreError):
    pass


class InvalidDocumentError(PricingError, ValueError):
    pass


class PricingInvariantError(PricingError):
    """
    A computed figure broke an invariant (negative total, over the sanity ceiling,
    usage counter past its limit). Order creation must be aborted.
    """


class UsageLimitExceeded(PricingInvariantError):
    pass


class CheckoutError(PricingError):
    pass
