"""Session manager client used to lock a user out while their data is deleted.

Locking drops the user's active sessions and refuses new logins; unlocking
lifts the refusal. Both calls are idempotent on the session manager side.

Outcome mapping:
- 200                         -> success
- 400 / 401 / 404             -> SessionApiResult with success=False, not retried
- 5xx, other codes, network   -> SessionApiTransientError, raised so the
                                 retry policy of the caller engages
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx
import structlog

from erasure.config import Settings, get_settings

log = structlog.get_logger(__name__)

_BAD_REQUEST_CODES = frozenset({400, 401, 404})


class SessionLockAction(StrEnum):
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"


class SessionApiTransientError(Exception):
    """The session manager could not be reached or answered with a server error."""

    def __init__(self, action: SessionLockAction, reason: str, status_code: int | None = None) -> None:
        super().__init__(f"Session Api call failed, action: {action} reason: {reason}")
        self.action = action
        self.reason = reason
        self.status_code = status_code


@dataclass
class SessionApiResult:
    """Outcome of a lock/unlock call that reached the session manager."""

    success: bool
    action: SessionLockAction
    status_code: int
    error: str | None = None


class SessionLockManager:
    """Async client for the session manager internal API.

    Use as an async context manager so the underlying HTTP client is
    pooled and closed:

        async with SessionLockManager.from_settings() as sessions:
            await sessions.lock(fiscal_code)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SessionLockManager:
        cfg = settings or get_settings()
        return cls(
            cfg.session_manager_internal_api_url,
            cfg.session_manager_internal_api_key.get_secret_value(),
            timeout_seconds=cfg.session_api_timeout_seconds,
        )

    async def __aenter__(self) -> SessionLockManager:
        self._http_client = self._build_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_seconds,
            headers={"X-Functions-Key": self._api_key},
            transport=self._transport,
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def lock(self, fiscal_code: str) -> SessionApiResult:
        return await self.set_lock(SessionLockAction.LOCK, fiscal_code)

    async def unlock(self, fiscal_code: str) -> SessionApiResult:
        return await self.set_lock(SessionLockAction.UNLOCK, fiscal_code)

    async def set_lock(self, action: SessionLockAction, fiscal_code: str) -> SessionApiResult:
        """Lock or unlock the sessions of ``fiscal_code``.

        Raises:
            SessionApiTransientError: network error or unexpected status
        """
        path = f"/api/v1/sessions/{fiscal_code}/{action.lower()}"
        client = self._http_client
        owns_client = client is None
        if client is None:
            client = self._build_client()

        try:
            response = await client.post(path)
        except httpx.HTTPError as exc:
            log.warning("sessions.call_failed", action=str(action), error=str(exc))
            raise SessionApiTransientError(action, str(exc)) from exc
        finally:
            if owns_client:
                await client.aclose()

        if response.status_code == 200:
            log.info("sessions.lock_updated", action=str(action))
            return SessionApiResult(success=True, action=action, status_code=200)

        if response.status_code in _BAD_REQUEST_CODES:
            error = f"Session Api called badly, action: {action} code: {response.status_code}"
            log.error("sessions.bad_request", action=str(action), status_code=response.status_code)
            return SessionApiResult(
                success=False,
                action=action,
                status_code=response.status_code,
                error=error,
            )

        log.warning("sessions.unexpected_status", action=str(action), status_code=response.status_code)
        raise SessionApiTransientError(
            action,
            f"Unexpected response code: {response.status_code}",
            status_code=response.status_code,
        )
