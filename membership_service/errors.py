class MembershipError(Exception):
    """Base class for reconciliation failures."""


class AuthenticationError(MembershipError):
    """Webhook signature or timestamp missing or wrong."""


class ValidationError(MembershipError):
    """Payload is malformed or lacks a required field."""


class StorageError(MembershipError):
    """Payment or profile read/write failed."""


class DuplicateError(StorageError):
    """A unique constraint rejected the write: the event was already handled."""


class IdentityError(MembershipError):
    """Identity lookup or creation failed."""


class UpstreamError(MembershipError):
    """The payment provider call failed or returned an unusable response."""
