import logging

from fastapi import HTTPException, status

from lawcrm.services.errors import (
    AlreadyCanceled,
    CrmError,
    MeetingNotFound,
    PersistenceFailure,
    UnresolvableReference,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[CrmError], int], ...] = (
    (UnresolvableReference, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationFailed, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (MeetingNotFound, status.HTTP_404_NOT_FOUND),
    (AlreadyCanceled, status.HTTP_409_CONFLICT),
    (PersistenceFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(exc: CrmError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            if status_code >= 500:
                logger.exception("CRM operation failed: %s", exc)
            return HTTPException(status_code=status_code, detail=str(exc))
    logger.exception("Unhandled CRM error: %s", exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
