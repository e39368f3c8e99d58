"""
Shared route helpers: security gate dependency and error rendering.
"""

from typing import Optional

from fastapi import Header, Query
from fastapi.responses import JSONResponse
import structlog

from exceptions import AppError
from services.security_service import AccessContext, get_security_service

logger = structlog.get_logger(__name__)


def require_access(
    token: Optional[str] = Query(None, description="Shared secret token"),
    domain: Optional[str] = Query(None, description="CRM portal domain"),
    x_auth_token: Optional[str] = Header(None, alias="X-Auth-Token"),
    x_bitrix_domain: Optional[str] = Header(None, alias="X-Bitrix-Domain"),
) -> AccessContext:
    """
    Security gate for every pipeline route.

    Token and domain are read from the query string first, then headers.
    Raises AuthError subclasses, rendered by the app-level handler.
    """
    return get_security_service().validate(
        token or x_auth_token,
        domain or x_bitrix_domain,
    )


def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    # Unexpected error
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )
