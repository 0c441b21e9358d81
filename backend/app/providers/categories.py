from __future__ import annotations

NORMALIZED_CATEGORIES: tuple[str, ...] = (
    "activity",
    "arts_culture",
    "coffee",
    "community",
    "education",
    "event_space",
    "fitness",
    "food",
    "kids",
    "nightlife",
    "outdoors",
    "shopping",
    "spiritual",
    "wellness",
    "workspace",
)

WILDCARD_CATEGORIES = {"all", "*", "any"}

CATEGORY_ALIASES: dict[str, str] = {
    "activities": "activity",
    "arts": "arts_culture",
    "art": "arts_culture",
    "culture": "arts_culture",
    "art_gallery": "arts_culture",
    "gallery": "arts_culture",
    "museum": "arts_culture",
    "cafe": "coffee",
    "cafes": "coffee",
    "social": "community",
    "board games": "community",
    "board_games": "community",
    "chess": "community",
    "community_center": "community",
    "school": "education",
    "schools": "education",
    "university": "education",
    "campus": "education",
    "learning": "education",
    "event": "event_space",
    "events": "event_space",
    "venue": "event_space",
    "venues": "event_space",
    "entertainment": "event_space",
    "gym": "fitness",
    "gyms": "fitness",
    "sport": "fitness",
    "sports": "fitness",
    "yoga": "fitness",
    "badminton": "fitness",
    "rock_climbing": "fitness",
    "climbing": "fitness",
    "bouldering": "fitness",
    "restaurant": "food",
    "restaurants": "food",
    "dining": "food",
    "eat": "food",
    "family": "kids",
    "bar": "nightlife",
    "bars": "nightlife",
    "club": "nightlife",
    "clubs": "nightlife",
    "outdoor": "outdoors",
    "park": "outdoors",
    "parks": "outdoors",
    "camping": "outdoors",
    "hiking": "outdoors",
    "running": "outdoors",
    "jogging": "outdoors",
    "track": "outdoors",
    "shop": "shopping",
    "shops": "shopping",
    "retail": "shopping",
    "market": "shopping",
    "markets": "shopping",
    "shopping_mall": "shopping",
    "worship": "spiritual",
    "church": "spiritual",
    "temple": "spiritual",
    "mosque": "spiritual",
    "place_of_worship": "spiritual",
    "salon": "wellness",
    "massage": "wellness",
    "spa": "wellness",
    "cowork": "workspace",
    "coworking": "workspace",
}

OSM_CATEGORY_TAGS: dict[str, list[tuple[str, tuple[str, ...]]]] = {
    "activity": [
        ("leisure", ("sports_centre", "pitch", "stadium")),
        ("amenity", ("community_centre", "recreation_ground")),
    ],
    "arts_culture": [
        ("amenity", ("theatre", "arts_centre", "cinema")),
        ("tourism", ("gallery", "museum")),
    ],
    "coffee": [("amenity", ("cafe",)), ("shop", ("coffee",))],
    "community": [("amenity", ("community_centre", "social_centre"))],
    "education": [("amenity", ("school", "kindergarten", "college", "university"))],
    "event_space": [("amenity", ("conference_centre", "events_venue", "exhibition_centre"))],
    "fitness": [
        ("leisure", ("fitness_centre", "sports_centre", "swimming_pool")),
        ("amenity", ("gym",)),
    ],
    "food": [
        ("amenity", ("restaurant", "fast_food", "food_court")),
        ("shop", ("supermarket", "bakery")),
    ],
    "kids": [("leisure", ("playground",)), ("amenity", ("childcare",))],
    "nightlife": [("amenity", ("bar", "pub", "nightclub"))],
    "outdoors": [("leisure", ("park", "nature_reserve")), ("natural", ("wood", "beach"))],
    "shopping": [
        ("shop", ("mall", "department_store", "general", "convenience")),
        ("amenity", ("marketplace",)),
    ],
    "spiritual": [("amenity", ("place_of_worship", "church", "temple", "mosque"))],
    "wellness": [("amenity", ("spa", "clinic")), ("shop", ("beauty", "massage"))],
    "workspace": [("office", ("coworking",)), ("amenity", ("coworking_space",))],
}

FOURSQUARE_CATEGORY_IDS: dict[str, tuple[str, ...]] = {
    "activity": ("18000", "19000"),
    "arts_culture": ("10000",),
    "coffee": ("13032",),
    "community": ("12000",),
    "education": ("12000", "13038"),
    "event_space": ("12004", "12009"),
    "fitness": ("18000",),
    "food": ("13065",),
    "kids": ("10046", "12065"),
    "nightlife": ("10032",),
    "outdoors": ("16000",),
    "shopping": ("17000",),
    "spiritual": ("12039",),
    "wellness": ("14000",),
    "workspace": ("12026", "12054"),
}

GOOGLE_PLACE_TYPES: dict[str, tuple[str, ...]] = {
    "activity": ("point_of_interest",),
    "arts_culture": ("art_gallery", "museum"),
    "coffee": ("cafe",),
    "community": ("community_center",),
    "education": ("school", "university"),
    "event_space": ("tourist_attraction",),
    "fitness": ("gym",),
    "food": ("restaurant",),
    "kids": ("park", "school"),
    "nightlife": ("bar",),
    "outdoors": ("park",),
    "shopping": ("shopping_mall", "store"),
    "spiritual": ("place_of_worship",),
    "wellness": ("spa",),
    "workspace": ("real_estate_agency",),
}


def normalize_category_key(value: str) -> str | None:
    lowered = value.strip().lower()
    if not lowered:
        return None
    if lowered in NORMALIZED_CATEGORIES:
        return lowered
    return CATEGORY_ALIASES.get(lowered)


def normalize_categories(values: list[str] | tuple[str, ...] | None) -> list[str]:
    normalized: list[str] = []
    for value in values or ():
        category = normalize_category_key(value)
        if category and category not in normalized:
            normalized.append(category)
    return normalized


def expand_category_aliases(values: list[str] | tuple[str, ...] | None) -> list[str]:
    sanitized = [value.strip().lower() for value in values or () if value and value.strip()]
    if not sanitized:
        return []
    if any(value in WILDCARD_CATEGORIES for value in sanitized):
        return list(NORMALIZED_CATEGORIES)
    return sorted(normalize_categories(sanitized))


def categories_from_osm_tags(tags: dict[str, str]) -> list[str]:
    matched: list[str] = []
    for category, tag_defs in OSM_CATEGORY_TAGS.items():
        for key, values in tag_defs:
            if tags.get(key) in values and category not in matched:
                matched.append(category)
    return matched


def categories_from_foursquare(raw_categories: list[dict]) -> list[str]:
    matched: list[str] = []
    for raw in raw_categories:
        by_name = normalize_category_key(str(raw.get("name") or ""))
        if by_name and by_name not in matched:
            matched.append(by_name)
        raw_id = str(raw.get("id") or "")
        for category, ids in FOURSQUARE_CATEGORY_IDS.items():
            if raw_id in ids and category not in matched:
                matched.append(category)
    return matched


def merge_categories(*category_lists: list[str] | None) -> list[str]:
    merged: list[str] = []
    for values in category_lists:
        for value in values or ():
            normalized = value.strip().lower()
            if normalized and normalized not in merged:
                merged.append(normalized)
    return merged
