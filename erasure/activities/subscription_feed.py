"""Record the user's unsubscription in the subscription feed."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from erasure.subscription_feed import SubscriptionFeed

UpdateSubscriptionsFeedResult = Literal["SUCCESS", "FAILURE"]


class UpdateSubscriptionsFeedActivity:
    name = "UpdateSubscriptionsFeedActivity"

    def __init__(self, feed: SubscriptionFeed) -> None:
        self._feed = feed

    async def __call__(self, raw_input: Mapping[str, Any]) -> UpdateSubscriptionsFeedResult:
        return await self._feed.update(raw_input)
