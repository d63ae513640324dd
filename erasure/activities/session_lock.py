"""Lock or unlock the user's sessions through the session manager."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from erasure.activities.base import (
    ActivityResultSuccess,
    BadApiRequestFailure,
    InvalidInputFailure,
    decode_input,
)
from erasure.schemas import CamelModel, FiscalCode
from erasure.sessions import SessionLockAction, SessionLockManager

log = structlog.get_logger(__name__)


class SetUserSessionLockInput(CamelModel):
    action: SessionLockAction
    fiscal_code: FiscalCode


SetUserSessionLockResult = ActivityResultSuccess | BadApiRequestFailure | InvalidInputFailure


class SetUserSessionLockActivity:
    """Calls the session manager once.

    A SessionApiTransientError (server error, network error) is not caught:
    it is an API_CALL_FAILURE the host retries.
    """

    name = "SetUserSessionLockActivity"

    def __init__(self, sessions: SessionLockManager) -> None:
        self._sessions = sessions

    async def __call__(self, raw_input: Mapping[str, Any]) -> SetUserSessionLockResult:
        decoded = decode_input(self.name, SetUserSessionLockInput, raw_input)
        if isinstance(decoded, InvalidInputFailure):
            return decoded

        result = await self._sessions.set_lock(decoded.action, decoded.fiscal_code)
        if not result.success:
            return BadApiRequestFailure(reason=result.error or "Session Api called badly")
        return ActivityResultSuccess()
