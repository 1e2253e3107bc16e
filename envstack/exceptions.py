from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """How a failed external command should be treated."""

    CONFIGURATION = "configuration"
    TRANSIENT = "transient"
    STATE_LOCK = "state_lock"
    READINESS = "readiness"
    UNKNOWN = "unknown"


class EnvstackError(Exception):
    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


class ConfigurationError(EnvstackError):
    """Invalid, overlapping or unsupported parameters. Requires operator correction."""

    category = ErrorCategory.CONFIGURATION


class TransientCloudError(EnvstackError):
    category = ErrorCategory.TRANSIENT


class StateLockError(EnvstackError):
    category = ErrorCategory.STATE_LOCK


class ProvisioningError(EnvstackError):
    pass


class ReadinessError(EnvstackError):
    category = ErrorCategory.READINESS

    def __init__(self, what: str, expected: int, ready: int, bound: Optional[int] = None):
        self.what = what
        self.expected = expected
        self.ready = ready
        self.bound = bound
        detail = f"{ready}/{expected} ready"
        if bound is not None:
            detail += f", {bound}/{expected} volumes bound"
        super().__init__(f"{what} not ready: {detail}")


class LeaseHeldError(EnvstackError):
    category = ErrorCategory.STATE_LOCK

    def __init__(self, lease_id: str, owner: str, expires: int):
        self.lease_id = lease_id
        self.owner = owner
        self.expires = expires
        super().__init__(f"Environment lease {lease_id} is held by {owner} until {expires}")


class ToolNotFoundError(EnvstackError):
    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"{tool} command not found. Please install {tool}.")


class InvalidTransitionError(EnvstackError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid run transition: {current} -> {target}")


class StageError(EnvstackError):
    """A workflow stage failed; wraps the underlying error."""

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        self.category = getattr(cause, "category", ErrorCategory.UNKNOWN)
        super().__init__(f"Stage {stage} failed: {cause}")


_EXCEPTIONS_BY_CATEGORY = {
    ErrorCategory.CONFIGURATION: ConfigurationError,
    ErrorCategory.TRANSIENT: TransientCloudError,
    ErrorCategory.STATE_LOCK: StateLockError,
}


def error_for_category(category: Optional[ErrorCategory], message: str) -> EnvstackError:
    return _EXCEPTIONS_BY_CATEGORY.get(category, ProvisioningError)(message)
