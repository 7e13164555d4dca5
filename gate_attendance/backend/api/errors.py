from fastapi import HTTPException, status

from ..services.errors import (
    AlreadyCompleteError, ConflictError, InactiveError, InvalidArgumentError,
    InvalidTimestampError, NotFoundError, ServiceError, StorageTimeoutError,
    StorageUnavailableError,
)

# First match wins. DuplicateScanError is a ConflictError and maps to 409 with it.
_STATUS_BY_ERROR = (
    (InvalidArgumentError, status.HTTP_400_BAD_REQUEST),
    (InvalidTimestampError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InactiveError, status.HTTP_400_BAD_REQUEST),
    (ConflictError, status.HTTP_409_CONFLICT),
    (AlreadyCompleteError, status.HTTP_400_BAD_REQUEST),
    (StorageTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (StorageUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(error: ServiceError) -> HTTPException:
    """Maps a service-layer failure to the HTTP error the caller sees."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_cls, code in _STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            status_code = code
            break
    headers = {"Retry-After": "1"} if error.retryable else None
    return HTTPException(status_code=status_code, detail=str(error), headers=headers)
