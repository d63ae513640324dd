"""Send the deletion confirmation email."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import EmailStr

from erasure.activities.base import (
    ActivityResultSuccess,
    InvalidInputFailure,
    decode_input,
)
from erasure.notifications import NotificationSender
from erasure.schemas import CamelModel, FiscalCode

log = structlog.get_logger(__name__)


class SendUserDataDeleteEmailInput(CamelModel):
    fiscal_code: FiscalCode
    to_address: EmailStr


SendUserDataDeleteEmailResult = ActivityResultSuccess | InvalidInputFailure


class SendUserDataDeleteEmailActivity:
    """EmailDeliveryError is not caught; the saga escalates it."""

    name = "SendUserDataDeleteEmailActivity"

    def __init__(self, sender: NotificationSender) -> None:
        self._sender = sender

    async def __call__(self, raw_input: Mapping[str, Any]) -> SendUserDataDeleteEmailResult:
        decoded = decode_input(self.name, SendUserDataDeleteEmailInput, raw_input)
        if isinstance(decoded, InvalidInputFailure):
            return decoded

        await self._sender.send_user_data_delete_email(decoded.to_address)
        return ActivityResultSuccess()
