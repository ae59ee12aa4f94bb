from __future__ import annotations


class BillingError(Exception):
    """Base class for errors surfaced to callers of the billing core."""


class ValidationError(BillingError):
    """Input has the wrong shape or exceeds a hard limit. Nothing was persisted."""


class NotFoundError(BillingError, LookupError):
    pass


class ConfirmationRequired(BillingError):
    """The operation would leave work behind and needs an explicit confirm."""


class SessionAlreadyActive(BillingError):
    pass


class RecognitionFailure(BillingError):
    """Every recognition tier the strategy allows has failed for this input."""


class SessionBusy(BillingError):
    """A chunk is in flight; the session cannot be torn down until it settles."""
