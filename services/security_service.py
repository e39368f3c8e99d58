"""
Security gate for pipeline operations.

Callers present a shared secret token and, optionally, their CRM portal
domain. The domain must be in the allow-list when one is configured.
"""

import hmac
from dataclasses import dataclass
from typing import Optional
import structlog

from config import get_settings
from exceptions import (
    UnauthenticatedError,
    ForbiddenDomainError,
    SecurityNotConfiguredError,
)

logger = structlog.get_logger(__name__)


@dataclass
class AccessContext:
    """Who passed the gate."""
    domain: Optional[str]


class SecurityService:
    def __init__(self, secret_token: Optional[str], allowed_domains: list[str]):
        self.secret_token = secret_token
        self.allowed_domains = allowed_domains

    def validate(self, token: Optional[str], domain: Optional[str]) -> AccessContext:
        """
        Check token and domain.

        Raises:
            SecurityNotConfiguredError: No secret configured on the server
            UnauthenticatedError: Token missing or wrong
            ForbiddenDomainError: Domain not in a non-empty allow-list
        """
        if not self.secret_token:
            logger.error("security_not_configured")
            raise SecurityNotConfiguredError()

        if not token or not hmac.compare_digest(token.encode(), self.secret_token.encode()):
            logger.warning("security_bad_token", domain=domain)
            raise UnauthenticatedError()

        if self.allowed_domains and domain not in self.allowed_domains:
            logger.warning("security_domain_forbidden", domain=domain)
            raise ForbiddenDomainError(domain)

        return AccessContext(domain=domain)


_service: Optional[SecurityService] = None


def get_security_service() -> SecurityService:
    global _service
    if _service is None:
        settings = get_settings()
        _service = SecurityService(
            secret_token=settings.app_secret_token,
            allowed_domains=settings.allowed_domain_list,
        )
    return _service
