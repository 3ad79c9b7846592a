# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""HTTP mapping of domain errors.

Resolution errors can surface from any endpoint that touches a tenant
database, so they are mapped once here instead of in every router, together
with the job and store lifecycle errors. Every error body has the shape
{"error": <kind>, "detail": <message>}.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.core.config import get_settings
from src.domains.jobs.service import JobNotFoundError, JobServiceError, JobStateError
from src.domains.provisioning.service import (
    HostnameInUseError,
    InvalidStatusTransitionError,
    StoreAlreadyExistsError,
    StoreProvisioningError,
    StoreServiceError,
)
from src.infrastructure.database.connection import DatabaseError
from src.infrastructure.database.scoping import CrossStoreAccessError
from src.infrastructure.database.tenant_manager import (
    ConnectionTimeoutError,
    CredentialDecryptionError,
    StoreNotFoundError,
    StoreNotProvisionedError,
    TenantResolutionError,
)
from src.infrastructure.security.encryption import EncryptionKeyError

logger = logging.getLogger(__name__)

CONNECTION_TIMEOUT_RETRY_AFTER = 5


def error_response(
    status_code: int,
    kind: str,
    detail: str,
    headers: dict[str, str] | None = None,
    **extra: object,
) -> JSONResponse:
    """Build the JSON error body used across the API."""
    content: dict[str, object] = {"error": kind, "detail": detail}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def tenant_resolution_error_handler(
    request: Request, exc: TenantResolutionError
) -> JSONResponse:
    """Map resolver errors to HTTP responses."""
    if isinstance(exc, StoreNotFoundError):
        return error_response(status.HTTP_404_NOT_FOUND, exc.kind, str(exc))

    if isinstance(exc, StoreNotProvisionedError):
        retry_after = get_settings().api.retry_after_seconds
        return error_response(
            status.HTTP_409_CONFLICT,
            exc.kind,
            str(exc),
            headers={"Retry-After": str(retry_after)},
            status=exc.status.value,
        )

    if isinstance(exc, CredentialDecryptionError):
        logger.error("Credential decryption failed for store %s", exc.store_id)
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            exc.kind,
            "Store database configuration error",
        )

    if isinstance(exc, ConnectionTimeoutError):
        return error_response(
            status.HTTP_504_GATEWAY_TIMEOUT,
            exc.kind,
            str(exc),
            headers={"Retry-After": str(CONNECTION_TIMEOUT_RETRY_AFTER)},
        )

    logger.error("Unhandled resolution error for store %s: %s", exc.store_id, exc)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.kind, str(exc))


async def cross_store_access_handler(
    request: Request, exc: CrossStoreAccessError
) -> JSONResponse:
    logger.error("%s", exc)
    return error_response(
        status.HTTP_403_FORBIDDEN,
        "cross_store_access",
        "Row belongs to a different store",
    )


async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error("Master database error: %s", exc)
    return error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "database_unavailable",
        "Master database unavailable",
    )


async def encryption_key_error_handler(
    request: Request, exc: EncryptionKeyError
) -> JSONResponse:
    logger.error("Credential encryption is not configured: %s", exc)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "encryption_unavailable",
        "Credential encryption is not configured",
    )


async def job_error_handler(request: Request, exc: JobServiceError) -> JSONResponse:
    if isinstance(exc, JobNotFoundError):
        return error_response(status.HTTP_404_NOT_FOUND, "job_not_found", str(exc))
    if isinstance(exc, JobStateError):
        return error_response(status.HTTP_409_CONFLICT, "invalid_job_state", str(exc))
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "job_error", str(exc))


async def store_error_handler(request: Request, exc: StoreServiceError) -> JSONResponse:
    if isinstance(exc, StoreAlreadyExistsError):
        return error_response(status.HTTP_409_CONFLICT, "store_already_exists", str(exc))
    if isinstance(exc, HostnameInUseError):
        return error_response(
            status.HTTP_409_CONFLICT, "hostname_in_use", str(exc), hostname=exc.hostname
        )
    if isinstance(exc, InvalidStatusTransitionError):
        return error_response(
            status.HTTP_409_CONFLICT,
            "invalid_status_transition",
            str(exc),
            status=exc.current.value,
        )
    if isinstance(exc, StoreProvisioningError):
        return error_response(
            status.HTTP_502_BAD_GATEWAY, "store_provisioning_failed", str(exc)
        )
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "store_error", str(exc))


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error handlers on an application."""
    app.add_exception_handler(TenantResolutionError, tenant_resolution_error_handler)
    app.add_exception_handler(JobServiceError, job_error_handler)
    app.add_exception_handler(StoreServiceError, store_error_handler)
    app.add_exception_handler(CrossStoreAccessError, cross_store_access_handler)
    app.add_exception_handler(DatabaseError, database_error_handler)
    app.add_exception_handler(EncryptionKeyError, encryption_key_error_handler)
