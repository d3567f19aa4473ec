"""
Reconnection API client using httpx sync client.
Best-effort: every failure (timeout, non-2xx, open breaker) comes back as
ReconnectResult(ok=False) and never touches money state.
"""
import logging
import time
from dataclasses import dataclass

import httpx
import pybreaker

from app.core.config import settings
from app.services.circuit_breaker import get_circuit_breaker
from app.utils.metrics import (
    reconnect_requests_total,
    reconnect_request_duration_seconds,
)


logger = logging.getLogger(__name__)


@dataclass
class ReconnectResult:
    ok: bool
    detail: str | None = None


class ReconnectionClient:
    """Sync client for the subscriber reconnection service."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> None:
        self._base_url = (base_url if base_url is not None else settings.reconnect_api_base).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.reconnect_api_key
        self._timeout = timeout if timeout is not None else settings.reconnect_timeout
        self._breaker = breaker or get_circuit_breaker("reconnection")
        self._client: httpx.Client | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._base_url)

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self._client = httpx.Client(timeout=self._timeout, headers=headers)
        return self._client

    def _post_reconnect(self, account_no: str) -> dict:
        resp = self.client.post(f"{self._base_url}/reconnect", json={"account_no": account_no})
        resp.raise_for_status()
        return resp.json() if resp.content else {}

    def reconnect(self, account_no: str) -> ReconnectResult:
        if not self.enabled:
            return ReconnectResult(ok=False, detail="disabled")

        start = time.time()
        try:
            data = self._breaker.call(self._post_reconnect, account_no)
        except pybreaker.CircuitBreakerError:
            result = ReconnectResult(ok=False, detail="circuit_open")
        except httpx.TimeoutException:
            result = ReconnectResult(ok=False, detail="timeout")
        except httpx.HTTPStatusError as e:
            result = ReconnectResult(ok=False, detail=f"status_{e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            result = ReconnectResult(ok=False, detail=type(e).__name__)
        else:
            if isinstance(data, dict) and data.get("ok") is False:
                result = ReconnectResult(ok=False, detail=str(data.get("status") or "rejected"))
            else:
                status = data.get("status") if isinstance(data, dict) else None
                result = ReconnectResult(ok=True, detail=str(status) if status else None)

        reconnect_requests_total.labels(status="success" if result.ok else "error").inc()
        reconnect_request_duration_seconds.observe(time.time() - start)
        if not result.ok:
            logger.warning(
                "reconnect_failed",
                extra={"account_no": account_no, "error": result.detail},
            )
        return result

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
