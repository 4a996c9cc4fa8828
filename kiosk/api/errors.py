from __future__ import annotations

import logging

from fastapi import HTTPException, status

from kiosk.queue.errors import (
    CustomerValidationError,
    DepartmentClosedError,
    ExhaustedRangeError,
    InvalidTicketTransitionError,
    InvalidTransferError,
    NoWindowAvailableError,
    QueueError,
    QueueNotFoundError,
    WindowUnavailableError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[QueueError], int], ...] = (
    (CustomerValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (QueueNotFoundError, status.HTTP_404_NOT_FOUND),
    (NoWindowAvailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DepartmentClosedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ExhaustedRangeError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InvalidTransferError, status.HTTP_409_CONFLICT),
    (InvalidTicketTransitionError, status.HTTP_409_CONFLICT),
    (WindowUnavailableError, status.HTTP_409_CONFLICT),
)


def queue_http_error(exc: QueueError) -> HTTPException:
    """Translate a queue domain error into the HTTP error returned to callers."""

    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    if isinstance(exc, ExhaustedRangeError):
        logger.error("Queue numbers exhausted: %s", exc)
    if isinstance(exc, CustomerValidationError) and exc.fields:
        return HTTPException(status_code=status_code, detail={"message": str(exc), "fields": list(exc.fields)})
    return HTTPException(status_code=status_code, detail=str(exc))
