from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ActivityDefinition:
    name: str
    slug: str
    keywords: tuple[str, ...]
    categories: tuple[str, ...] = ()


ACTIVITY_CATALOG: tuple[ActivityDefinition, ...] = (
    ActivityDefinition("Chess", "chess", ("chess", "board game", "board games"), ("community",)),
    ActivityDefinition("Board Games", "board-games", ("board game", "board games", "tabletop", "game cafe"), ("community",)),
    ActivityDefinition("Bowling", "bowling", ("bowling", "bowling alley", "bowling lanes"), ("activity",)),
    ActivityDefinition("Climbing", "climbing", ("climbing", "rock climbing", "bouldering", "climbing gym"), ("fitness",)),
    ActivityDefinition("Yoga", "yoga", ("yoga", "meditation", "stretching", "pilates"), ("fitness", "wellness")),
    ActivityDefinition("Badminton", "badminton", ("badminton", "shuttlecock"), ("fitness",)),
    ActivityDefinition("Tennis", "tennis", ("tennis", "tennis court"), ("fitness",)),
    ActivityDefinition("Basketball", "basketball", ("basketball", "basketball court", "hoops"), ("fitness",)),
    ActivityDefinition("Soccer", "soccer", ("soccer", "football pitch", "futsal"), ("fitness",)),
    ActivityDefinition("Swimming", "swimming", ("swimming", "swimming pool", "pool", "lap swim"), ("fitness",)),
    ActivityDefinition("Running", "running", ("running", "jogging", "track", "running trail"), ("outdoors",)),
    ActivityDefinition("Cycling", "cycling", ("cycling", "bike", "bicycle", "spin class"), ("outdoors", "fitness")),
    ActivityDefinition("Hiking", "hiking", ("hiking", "trail", "nature reserve", "trek"), ("outdoors",)),
    ActivityDefinition("Martial Arts", "martial-arts", ("martial arts", "karate", "judo", "muay thai", "boxing"), ("fitness",)),
    ActivityDefinition("Dance", "dance", ("dance", "dance studio", "salsa", "ballet"), ("fitness", "arts_culture")),
    ActivityDefinition("Art Classes", "art-classes", ("art class", "painting", "pottery", "ceramics", "gallery"), ("arts_culture",)),
    ActivityDefinition("Live Music", "live-music", ("live music", "concert", "jazz", "gig"), ("nightlife", "arts_culture")),
    ActivityDefinition("Karaoke", "karaoke", ("karaoke",), ("nightlife",)),
    ActivityDefinition("Billiards", "billiards", ("billiards", "pool table", "snooker"), ("nightlife",)),
    ActivityDefinition("Coworking", "coworking", ("coworking", "co-working", "hot desk"), ("workspace",)),
)

ACTIVITY_NAMES: tuple[str, ...] = tuple(activity.name for activity in ACTIVITY_CATALOG)
_BY_LOWER_NAME = {activity.name.lower(): activity for activity in ACTIVITY_CATALOG}
_BY_SLUG = {activity.slug: activity for activity in ACTIVITY_CATALOG}


def get_activity(value: str | None) -> ActivityDefinition | None:
    if not value:
        return None
    lowered = value.strip().lower()
    return _BY_LOWER_NAME.get(lowered) or _BY_SLUG.get(lowered.replace("_", "-").replace(" ", "-"))


def to_activity_name(value: str | None) -> str | None:
    activity = get_activity(value)
    return activity.name if activity else None


def filter_activity_names(values: list[str] | None) -> list[str]:
    names: list[str] = []
    for value in values or []:
        name = to_activity_name(value)
        if name and name not in names:
            names.append(name)
    return names


def keyword_match(activity_name: str, texts: list[str]) -> bool:
    activity = get_activity(activity_name)
    if activity is None:
        return False
    haystack = " ".join(text.lower() for text in texts if text)
    return any(keyword in haystack for keyword in activity.keywords)


def category_match(activity_name: str, categories: list[str]) -> bool:
    activity = get_activity(activity_name)
    if activity is None:
        return False
    return bool(set(activity.categories) & {category.lower() for category in categories})
