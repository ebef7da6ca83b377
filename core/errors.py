"""
core/errors.py -- Error taxonomy shared by every layer.

The HTTP layer (api/main.py) maps each class to exactly one transport outcome:

  AuthenticationError     -> 401 (error envelope)
  AuthorizationError      -> 403, empty body
  NotFoundError           -> 403, empty body (indistinguishable from a denial)
  InvalidTransitionError  -> 400 with a machine-readable reason
  ValidationError         -> 400 with a machine-readable code
  StorageError            -> 500 (generic envelope, detail only in the log)

None of these are retried. They are terminal for the request that raised them.

Layer rule: core/ is the kernel. No imports from api/, auth/ or cmdb/.
"""


class VulnConsoleError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str = "") -> None:
        self.message = message
        super().__init__(message)


class AuthenticationError(VulnConsoleError):
    """No identity, or an identity that cannot be verified."""


class AuthorizationError(VulnConsoleError):
    """The identity is valid but the action is denied.

    The message is for logs only. It is never sent to the client.
    """


class NotFoundError(VulnConsoleError):
    """The target resource does not exist.

    Attributes:
        kind: resource kind ("user", "domain", ...)
        resource_id: the id that failed to resolve
    """

    def __init__(self, kind: str, resource_id) -> None:
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"{kind} {resource_id} not found")


class InvalidTransitionError(VulnConsoleError):
    """A lifecycle precondition was violated.

    reason is a stable snake_case token clients can switch on,
    e.g. "reopen_not_allowed".
    """

    def __init__(self, reason: str, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or reason)


class ValidationError(VulnConsoleError):
    """Malformed or unsupported input."""

    def __init__(self, message: str, code: str = "validation_error") -> None:
        self.code = code
        super().__init__(message)


class StorageError(VulnConsoleError):
    """The persistence layer failed. Propagates as a 500."""
