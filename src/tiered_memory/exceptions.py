"""Tiered memory exception classes."""


class MemorySystemError(Exception):
    """Base exception for the memory subsystem."""

    pass


class EmptyInputError(MemorySystemError, ValueError):
    """Text is empty after normalization and cannot be embedded."""

    def __init__(self, message: str = "Cannot embed empty text"):
        super().__init__(message)


class MissingUserError(MemorySystemError):
    """A user-scoped operation was invoked without a user id."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"'{operation}' requires a user id")


class DimensionMismatchError(MemorySystemError, ValueError):
    """Two vectors of different dimensionality were compared."""

    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"Vector dimensions differ: {left} != {right}")


class AuthorizationError(MemorySystemError):
    """Cross-user access attempted without sufficient authorization."""

    def __init__(self, operation: str, principal_id: str | None = None):
        self.operation = operation
        self.principal_id = principal_id
        who = principal_id or "anonymous caller"
        super().__init__(f"{who} is not authorized for '{operation}'")


class ProviderTimeoutError(MemorySystemError, TimeoutError):
    """An external provider did not answer within its timeout."""

    def __init__(self, provider: str, timeout: float):
        self.provider = provider
        self.timeout = timeout
        super().__init__(f"{provider} call timed out after {timeout:.1f}s")
