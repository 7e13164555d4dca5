# --- Service layer exception classes ---
# Every failure the engine reports to its callers is one of these.
# The API layer maps `code` to an HTTP status; `retryable` tells the caller
# whether repeating the same request may succeed.


class ServiceError(Exception):
    """General exception class for the service layer."""
    code = "service_error"
    retryable = False


class InvalidArgumentError(ServiceError):
    """A required field is missing or malformed."""
    code = "invalid_argument"


class NotFoundError(ServiceError):
    """Unknown student, device, record id or tag."""
    code = "not_found"


class InactiveError(ServiceError):
    """The student exists but has been deactivated."""
    code = "inactive"


class ConflictError(ServiceError):
    """A uniqueness rule would be violated."""
    code = "conflict"


class DuplicateScanError(ConflictError):
    """A second scan arrived inside the de-duplication window of the entry scan."""
    code = "duplicate_scan"


class AlreadyCompleteError(ServiceError):
    """The day's record already has both entry and exit; no scan transition is left."""
    code = "already_complete"


class InvalidTimestampError(ServiceError):
    """A device-supplied timestamp could not be parsed."""
    code = "invalid_timestamp"


class StorageTimeoutError(ServiceError):
    """Storage (or a per-key lock) did not respond in time."""
    code = "timeout"
    retryable = True


class StorageUnavailableError(ServiceError):
    """Storage could not be reached."""
    code = "unavailable"
    retryable = True
