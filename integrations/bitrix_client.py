"""
Bitrix24 REST client with a process-wide rate limiter.

Every call goes through one shared RateLimiter, so no two requests to the
portal start less than the configured interval apart, whoever issues them.
"""

import threading
import time
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import requests
import structlog

from config import get_settings
from exceptions import ApiError, TransportError, CrmNotConfiguredError
from models.crm import CrmEntity, EntityKind

logger = structlog.get_logger(__name__)

BATCH_COMMAND_LIMIT = 50


class RateLimiter:
    """
    Enforces a minimum interval between call starts.

    The lock is held while sleeping, so concurrent callers queue up and
    each one starts as soon as its slot opens.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    @property
    def last_call(self) -> Optional[float]:
        return self._last_call

    def wait(self) -> None:
        """Block until the next call may start, then claim the slot."""
        with self._lock:
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                if elapsed < self.min_interval:
                    self._sleep(self.min_interval - elapsed)
            self._last_call = self._clock()


class BitrixClient:
    """
    Thin wrapper over the Bitrix24 inbound webhook.

    Raises:
        TransportError: endpoint unreachable or non-2xx status
        ApiError: response body carries an error
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        rate_limiter: RateLimiter,
        timeout: float = 30.0,
        http: Optional[requests.Session] = None,
    ):
        self.webhook_url = webhook_url
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.http = http or requests.Session()

    def _url_for(self, method: str, domain: Optional[str]) -> str:
        if not self.webhook_url:
            raise CrmNotConfiguredError()
        base = self.webhook_url.replace("{domain}", domain or "")
        if not base.endswith("/"):
            base += "/"
        return f"{base}{method}"

    # ===================
    # LOW LEVEL
    # ===================

    def call(self, method: str, params: Optional[dict] = None, domain: Optional[str] = None) -> dict:
        """
        Issue one rate-limited REST call.

        Args:
            method: REST method name (e.g. "crm.contact.list")
            params: JSON body
            domain: Portal domain substituted into the webhook URL

        Returns:
            Decoded JSON response body
        """
        url = self._url_for(method, domain)
        self.rate_limiter.wait()

        logger.debug("bitrix_call", method=method, domain=domain)

        try:
            response = self.http.post(url, json=params or {}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("bitrix_request_failed", method=method, error=str(e))
            raise TransportError(f"Bitrix request failed: {e}", details={"method": method})

        if not response.ok:
            logger.error("bitrix_http_error", method=method, status=response.status_code)
            raise TransportError(
                f"Bitrix API error: {response.status_code} {response.reason}",
                details={"method": method, "status": response.status_code}
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(f"Bitrix returned invalid JSON: {e}", details={"method": method})

        if isinstance(body, dict) and body.get("error"):
            message = body.get("error_description") or body["error"]
            logger.warning("bitrix_api_error", method=method, error=message)
            raise ApiError(f"Bitrix API error: {message}", details={"method": method, "error": body["error"]})

        return body

    # ===================
    # CRM OPERATIONS
    # ===================

    def search(
        self,
        kind: EntityKind,
        field: str,
        value: str,
        domain: Optional[str] = None,
    ) -> list[CrmEntity]:
        """Find records of one kind whose field equals value."""
        body = self.call(
            kind.list_method,
            {"filter": {field: value}, "select": ["ID", "*"]},
            domain=domain,
        )
        rows = body.get("result") or []
        return [
            CrmEntity(id=str(row.get("ID")), kind=kind, fields=row)
            for row in rows
            if isinstance(row, dict) and row.get("ID") is not None
        ]

    def update(
        self,
        kind: EntityKind,
        entity_id: str,
        fields: dict[str, Any],
        domain: Optional[str] = None,
    ) -> bool:
        """Update a single record."""
        body = self.call(
            kind.update_method,
            {"id": entity_id, "fields": fields},
            domain=domain,
        )
        if body.get("result") is False:
            raise ApiError(
                f"Bitrix refused update of {kind.value} {entity_id}",
                details={"entity_id": entity_id}
            )
        return True

    def bulk_update(
        self,
        kind: EntityKind,
        updates: list[tuple[str, dict[str, Any]]],
        domain: Optional[str] = None,
    ) -> bool:
        """
        Update many records of one kind in a single batch call.

        The call is all-or-nothing from the caller's point of view: any
        sub-command error raises ApiError for the whole group.
        """
        if not updates:
            return True
        if len(updates) > BATCH_COMMAND_LIMIT:
            raise ValueError(f"Bitrix batch accepts at most {BATCH_COMMAND_LIMIT} commands")

        cmd = {
            f"{kind.value}_{index}": build_update_command(kind, entity_id, fields)
            for index, (entity_id, fields) in enumerate(updates)
        }
        body = self.call("batch", {"halt": 0, "cmd": cmd}, domain=domain)

        result = body.get("result") or {}
        sub_errors = result.get("result_error") if isinstance(result, dict) else None
        if sub_errors:
            logger.warning("bitrix_batch_partial_errors", kind=kind.value, errors=sub_errors)
            raise ApiError(
                f"Bitrix batch reported {len(sub_errors)} failed commands",
                details={"errors": sub_errors}
            )
        return True


def build_update_command(kind: EntityKind, entity_id: str, fields: dict[str, Any]) -> str:
    """Encode one update as a batch sub-command query string."""
    params = {"id": entity_id}
    for name, value in fields.items():
        params[f"fields[{name}]"] = "" if value is None else value
    return f"{kind.update_method}?{urlencode(params)}"


# ===================
# SHARED INSTANCE
# ===================

_rate_limiter: Optional[RateLimiter] = None
_client: Optional[BitrixClient] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(get_settings().rate_limit_interval_seconds)
    return _rate_limiter


def get_bitrix_client() -> BitrixClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = BitrixClient(
            webhook_url=settings.bitrix_webhook_url,
            rate_limiter=get_rate_limiter(),
            timeout=settings.request_timeout_seconds,
        )
    return _client
