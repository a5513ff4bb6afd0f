class ValidationError(ValueError):
    """Malformed input: bad amount, missing recurring interval, unknown enum."""


class NotFoundError(ValueError):
    """The account, transaction or budget does not exist."""


class AuthorizationError(PermissionError):
    """The caller is unauthenticated or does not own the resource."""


class TransientStoreError(RuntimeError):
    """An atomic write was aborted by the store (lock contention, lost connection)."""
