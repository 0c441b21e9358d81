from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from ..services.geo import Bounds

logger = logging.getLogger(__name__)


class PlaceProvider(str, Enum):
    MANUAL = "manual"
    FOURSQUARE = "foursquare"
    GOOGLE_PLACES = "google_places"
    OPENSTREETMAP = "openstreetmap"


# Lower value wins primary-source selection during reconciliation.
PROVIDER_PRIORITY: dict[PlaceProvider, int] = {
    PlaceProvider.MANUAL: 0,
    PlaceProvider.FOURSQUARE: 1,
    PlaceProvider.GOOGLE_PLACES: 2,
    PlaceProvider.OPENSTREETMAP: 3,
}


def provider_priority(provider: PlaceProvider | str) -> int:
    return PROVIDER_PRIORITY.get(PlaceProvider(provider), len(PROVIDER_PRIORITY))


@dataclass(frozen=True, slots=True)
class Attribution:
    provider: str
    text: str
    url: str | None = None
    license: str | None = None

    def key(self) -> tuple[str, str, str]:
        return (self.provider, self.text, self.url or "")

    def as_dict(self) -> dict[str, str | None]:
        return {"provider": self.provider, "text": self.text, "url": self.url, "license": self.license}


@dataclass(frozen=True, slots=True)
class NormalizedRecord:
    provider: PlaceProvider
    provider_place_id: str
    name: str
    lat: float
    lng: float
    attribution: Attribution
    confidence: float
    categories: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    address: str | None = None
    locality: str | None = None
    region: str | None = None
    country: str | None = None
    postcode: str | None = None
    website: str | None = None
    phone: str | None = None
    rating: float | None = None
    rating_count: int | None = None
    price_level: int | None = None
    description: str | None = None
    can_persist: bool = True
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def source_key(self) -> tuple[str, str]:
        return (self.provider.value, self.provider_place_id)


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(self, message: str, provider_name: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.provider_name = provider_name
        self.details = details or {}


class ProviderTimeoutError(ProviderError):
    pass


class ProviderRateLimitError(ProviderError):
    pass


class ProviderResponseError(ProviderError):
    pass


def coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def coerce_price_level(value: Any) -> int | None:
    number = coerce_float(value)
    if number is None:
        return None
    level = int(round(number))
    return level if 1 <= level <= 4 else None


def has_valid_location(lat: float | None, lng: float | None) -> bool:
    if lat is None or lng is None:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


class PlaceAdapter(ABC):
    """Translates one provider's request and response shapes into ``NormalizedRecord``s."""

    provider: PlaceProvider

    def __init__(
        self,
        *,
        timeout_seconds: float = 8.0,
        user_agent: str = "venue-discovery",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self._client = client

    @property
    def name(self) -> str:
        return self.provider.value

    @abstractmethod
    async def fetch(self, bounds: Bounds, categories: list[str], *, limit: int = 50) -> list[NormalizedRecord]:
        """Fetch and normalize the provider's places inside ``bounds``."""

    async def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            if self._client is not None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(
                    timeout=self.timeout_seconds,
                    headers={"User-Agent": self.user_agent},
                ) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{self.name} request timed out", self.name) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name} request failed: {exc}", self.name) from exc

        if response.status_code == 429:
            raise ProviderRateLimitError(
                f"{self.name} rate limit exceeded",
                self.name,
                {"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise ProviderResponseError(
                f"{self.name} request failed ({response.status_code})",
                self.name,
                {"status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderResponseError(f"{self.name} returned malformed JSON", self.name) from exc
