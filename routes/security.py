"""
Security check route used by the wizard before showing the upload step.
"""

from fastapi import APIRouter
import structlog

from models.session import SecurityCheckRequest
from routes.dependencies import handle_error
from services.security_service import get_security_service

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/security", tags=["Security"])


@router.post("/validate")
async def validate_security(request: SecurityCheckRequest):
    """
    Check a token/domain pair without touching any session.

    Raises:
        401: Invalid token
        403: Domain not authorized
    """
    try:
        get_security_service().validate(request.token, request.domain)
        return {"valid": True}

    except Exception as e:
        return handle_error(e)
