"""Exception hierarchy shared by every lempkit operation."""


class LempkitError(Exception):
    """Base class for operational failures reported to the operator."""


class PrivilegeError(LempkitError):
    pass


class UnsupportedSystemError(LempkitError):
    pass


class ValidationError(LempkitError):
    """Raised when operator input or host state fails a precondition."""


class ConfirmationError(LempkitError):
    """Raised when a destructive operation was not confirmed."""


class ConfigEditError(LempkitError):
    pass


class MissingCredentialsError(LempkitError):
    pass


class RestoreError(LempkitError):
    pass
