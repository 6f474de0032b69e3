from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from dbkeeper.core.errors import (
    ArtifactImmutableError,
    ArtifactNotFoundError,
    BackupInProgressError,
    ConfigurationError,
    DbKeeperError,
    IntegrationUnavailableError,
)


logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[DbKeeperError], int], ...] = (
    (ArtifactNotFoundError, 404),
    (BackupInProgressError, 409),
    (ArtifactImmutableError, 409),
    (ConfigurationError, 422),
    (IntegrationUnavailableError, 503),
)


def status_for(exc: DbKeeperError) -> int:
    for error_cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status
    return 500


async def dbkeeper_exception_handler(request: Request, exc: DbKeeperError) -> JSONResponse:
    # Map domain errors to the same {"detail": {"code", "message"}} shape HTTPException uses.
    status = status_for(exc)
    if status >= 500:
        logger.error("api_request_failed path=%s code=%s error=%s", request.url.path, exc.code, exc)
    return JSONResponse(
        status_code=status,
        content={"detail": {"code": exc.code, "message": str(exc)}},
    )
