"""Profile and service preference lookups done before the grace period starts."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

import structlog

from erasure.activities.base import (
    InvalidInputFailure,
    NotFoundFailure,
    QueryFailureResult,
    decode_input,
)
from erasure.failures import QueryFailure
from erasure.schemas import CamelModel, FiscalCode, Profile, ServicePreference
from erasure.storage.repositories import ProfileRepository, ServicePreferenceRepository

log = structlog.get_logger(__name__)


class GetProfileInput(CamelModel):
    fiscal_code: FiscalCode


class GetProfileSuccess(CamelModel):
    kind: Literal["SUCCESS"] = "SUCCESS"
    value: Profile


GetProfileResult = GetProfileSuccess | NotFoundFailure | QueryFailureResult | InvalidInputFailure


class GetProfileActivity:
    """Return the latest version of the user's profile."""

    name = "GetProfileActivity"

    def __init__(self, profiles: ProfileRepository) -> None:
        self._profiles = profiles

    async def __call__(self, raw_input: Mapping[str, Any]) -> GetProfileResult:
        decoded = decode_input(self.name, GetProfileInput, raw_input)
        if isinstance(decoded, InvalidInputFailure):
            return decoded

        try:
            profile = await self._profiles.find_last(decoded.fiscal_code)
        except QueryFailure as failure:
            log.error("activity.get_profile.query_failed", reason=failure.reason)
            return QueryFailureResult(reason=failure.reason, query=failure.query)

        if profile is None:
            log.warning("activity.get_profile.not_found", fiscal_code=decoded.fiscal_code)
            return NotFoundFailure()
        return GetProfileSuccess(value=profile)


class GetServicesPreferencesInput(CamelModel):
    fiscal_code: FiscalCode
    settings_version: int


class GetServicesPreferencesSuccess(CamelModel):
    kind: Literal["SUCCESS"] = "SUCCESS"
    preferences: list[ServicePreference]


GetServicesPreferencesResult = (
    GetServicesPreferencesSuccess | QueryFailureResult | InvalidInputFailure
)


class GetServicesPreferencesActivity:
    """Return the service preferences stored under the profile's settings version."""

    name = "GetServicesPreferencesActivity"

    def __init__(self, preferences: ServicePreferenceRepository) -> None:
        self._preferences = preferences

    async def __call__(self, raw_input: Mapping[str, Any]) -> GetServicesPreferencesResult:
        decoded = decode_input(self.name, GetServicesPreferencesInput, raw_input)
        if isinstance(decoded, InvalidInputFailure):
            return decoded

        try:
            preferences = await self._preferences.find_for_settings_version(
                decoded.fiscal_code, decoded.settings_version
            )
        except QueryFailure as failure:
            return QueryFailureResult(reason=failure.reason, query=failure.query)
        return GetServicesPreferencesSuccess(preferences=preferences)
