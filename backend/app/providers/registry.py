from __future__ import annotations

import logging

from ..config import Settings
from .base import PlaceAdapter, provider_priority
from .foursquare import FoursquareAdapter
from .google_places import GooglePlacesAdapter
from .osm import OverpassAdapter

logger = logging.getLogger(__name__)


def build_adapters(config: Settings) -> list[PlaceAdapter]:
    """Instantiate every adapter whose credentials are configured, in priority order."""
    common = {"timeout_seconds": config.provider_timeout_seconds, "user_agent": config.provider_user_agent}
    adapters: list[PlaceAdapter] = [OverpassAdapter(config.overpass_api_url, **common)]

    if config.foursquare_api_key.strip():
        adapters.append(FoursquareAdapter(config.foursquare_api_key.strip(), **common))
    else:
        logger.info("Foursquare adapter disabled: FOURSQUARE_API_KEY is not set")

    if config.google_places_api_key.strip():
        adapters.append(GooglePlacesAdapter(config.google_places_api_key.strip(), **common))
    else:
        logger.info("Google Places adapter disabled: GOOGLE_PLACES_API_KEY is not set")

    return sorted(adapters, key=lambda adapter: provider_priority(adapter.provider))
