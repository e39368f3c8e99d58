"""
Unit tests for SecurityService.

Run: pytest tests/unit/test_security_service.py -v
"""

import pytest

from exceptions import (
    ForbiddenDomainError,
    SecurityNotConfiguredError,
    UnauthenticatedError,
)
from services.security_service import SecurityService


class TestValidate:
    """Tests for SecurityService.validate()"""

    def test_valid_token_and_domain(self, security_service):
        """Should return the access context for a valid pair."""
        context = security_service.validate("s3cret", "portal.bitrix24.ru")

        assert context.domain == "portal.bitrix24.ru"

    def test_wrong_token(self, security_service):
        """Should reject a wrong token with 401."""
        with pytest.raises(UnauthenticatedError) as exc_info:
            security_service.validate("guess", "portal.bitrix24.ru")

        assert exc_info.value.status_code == 401

    def test_missing_token(self, security_service):
        """Should reject a missing token."""
        with pytest.raises(UnauthenticatedError):
            security_service.validate(None, "portal.bitrix24.ru")

    def test_forbidden_domain(self, security_service):
        """Should reject a domain outside the allow-list with 403."""
        with pytest.raises(ForbiddenDomainError) as exc_info:
            security_service.validate("s3cret", "evil.bitrix24.ru")

        assert exc_info.value.status_code == 403
        assert exc_info.value.code == "DOMAIN_FORBIDDEN"

    def test_token_checked_before_domain(self, security_service):
        """Should report the token problem when both are wrong."""
        with pytest.raises(UnauthenticatedError):
            security_service.validate("guess", "evil.bitrix24.ru")

    def test_empty_allow_list_accepts_any_domain(self):
        """Should accept any domain, or none, when no allow-list is configured."""
        service = SecurityService(secret_token="s3cret", allowed_domains=[])

        assert service.validate("s3cret", "anything.example").domain == "anything.example"
        assert service.validate("s3cret", None).domain is None

    def test_not_configured(self):
        """Should refuse everything when no secret is configured."""
        service = SecurityService(secret_token=None, allowed_domains=[])

        with pytest.raises(SecurityNotConfiguredError):
            service.validate("anything", None)
