import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.config import settings
from app.errors import NotFound
from app.models import Place, Venue
from app.services.classifier import (
    ActivityClassifier,
    ClassificationService,
    ClassifierError,
    ClassifierInput,
    KeywordActivityBackend,
    normalize_classification,
    normalize_reviews,
)
from app.services.place_repository import as_utc

from conftest import make_record, store_places


class FailingBackend:
    def __init__(self) -> None:
        self.calls = 0

    async def classify(self, payload):
        self.calls += 1
        raise ClassifierError("model unavailable")


class RecoveringBackend:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        self.failing = True
        self.calls = 0

    async def classify(self, payload):
        self.calls += 1
        if self.failing:
            raise ClassifierError("model unavailable", status_code=self.status_code)
        return {"tags": ["Karaoke"], "confidence": {"Karaoke": 0.9}}


def _transient_venue() -> Venue:
    place = Place(name="Chess Corner Cafe", categories=["community"], tags=[])
    return Venue(place=place, name=place.name, ai_activity_tags=[], verified_activities=[])


def _service(**kwargs) -> ClassificationService:
    return ClassificationService(ActivityClassifier(settings.classification_ttl_seconds, **kwargs))


def test_normalize_classification_filters_and_clamps():
    tags, confidence = normalize_classification(
        {"tags": ["chess", "CHESS", "Underwater Hockey", "board-games"], "confidence": {"chess": 1.4}}
    )
    assert tags == ["Chess", "Board Games"]
    assert confidence == {"Chess": 1.0}


def test_normalize_classification_falls_back_to_rank_confidence():
    tags, confidence = normalize_classification({"tags": ["Yoga", "Dance"]})
    assert tags == ["Yoga", "Dance"]
    assert confidence == {"Yoga": 1.0, "Dance": 0.5}


def test_normalize_reviews_trims_and_caps():
    reviews = normalize_reviews(["  great lanes ", "", "x" * 1000] + ["ok"] * 20)
    assert reviews[0] == "great lanes"
    assert len(reviews[1]) == 400
    assert len(reviews) == 10


def test_keyword_backend_scores_name_and_body_evidence():
    payload = ClassifierInput(
        venue_name="Chess Corner Cafe",
        description="Bowling lanes upstairs",
        reviews=["Love the bowling nights"],
        keywords=["community"],
    )
    result = asyncio.run(KeywordActivityBackend().classify(payload))

    assert result["tags"] == ["Bowling", "Chess"]
    assert result["confidence"] == {"Bowling": 0.45, "Chess": 0.45}


def test_model_failure_falls_back_to_keywords():
    backend = FailingBackend()
    classifier = ActivityClassifier(settings.classification_ttl_seconds, model_backend=backend)
    place = Place(name="Chess Corner Cafe", categories=["community"], tags=[])
    venue = Venue(place=place, name=place.name, ai_activity_tags=[], verified_activities=[])

    first = asyncio.run(classifier.classify(venue))
    venue.last_ai_update = None
    asyncio.run(classifier.classify(venue))

    assert first.refreshed
    assert first.activity_tags == ["Chess"]
    assert venue.needs_verification is True
    assert backend.calls == 1


def test_model_is_retried_after_cooldown():
    now = [0.0]
    backend = RecoveringBackend(status_code=503)
    classifier = ActivityClassifier(
        settings.classification_ttl_seconds,
        model_backend=backend,
        model_retry_seconds=60.0,
        clock=lambda: now[0],
    )

    failed = asyncio.run(classifier.classify(_transient_venue()))
    paused = asyncio.run(classifier.classify(_transient_venue()))
    backend.failing = False
    now[0] = 61.0
    recovered = asyncio.run(classifier.classify(_transient_venue()))

    assert failed.activity_tags == ["Chess"]
    assert paused.activity_tags == ["Chess"]
    assert recovered.activity_tags == ["Karaoke"]
    assert backend.calls == 2
    assert classifier.model_available()


def test_rejected_credentials_disable_the_model():
    now = [0.0]
    backend = RecoveringBackend(status_code=401)
    classifier = ActivityClassifier(
        settings.classification_ttl_seconds,
        model_backend=backend,
        model_retry_seconds=60.0,
        clock=lambda: now[0],
    )

    asyncio.run(classifier.classify(_transient_venue()))
    now[0] = 10_000.0
    result = asyncio.run(classifier.classify(_transient_venue()))

    assert result.activity_tags == ["Chess"]
    assert backend.calls == 1
    assert not classifier.model_available()


def test_cached_classification_is_kept_until_forced(db_session):
    service = _service()
    (place,) = store_places(db_session, make_record())

    venue, first = asyncio.run(service.classify_venue(db_session, str(place.id)))
    assert first.refreshed
    assert venue.ai_activity_tags == ["Chess"]

    venue.raw_description = "Bowling lanes and late night karaoke"
    db_session.commit()

    venue, cached = asyncio.run(service.classify_venue(db_session, str(venue.id)))
    assert not cached.refreshed
    assert cached.diagnostics == ["classification:skipped-up-to-date"]
    assert venue.ai_activity_tags == ["Chess"]

    venue, forced = asyncio.run(service.classify_venue(db_session, str(venue.id), force=True))
    assert forced.refreshed
    assert "Bowling" in venue.ai_activity_tags
    assert "Karaoke" in venue.ai_activity_tags


def test_expired_classification_is_refreshed(db_session):
    service = _service()
    (place,) = store_places(db_session, make_record())
    venue, _ = asyncio.run(service.classify_venue(db_session, str(place.id)))

    venue.last_ai_update = datetime.now(timezone.utc) - timedelta(seconds=settings.classification_ttl_seconds + 60)
    db_session.commit()

    _, result = asyncio.run(service.classify_venue(db_session, str(venue.id)))
    assert result.refreshed


def test_place_refresh_leaves_classification_alone(db_session):
    service = _service()
    (place,) = store_places(db_session, make_record())
    venue, result = asyncio.run(service.classify_venue(db_session, str(place.id)))
    classified_at = as_utc(venue.last_ai_update)

    store_places(db_session, make_record(website="https://chess.example", categories=("community", "coffee")))
    db_session.refresh(venue)

    assert venue.place.website == "https://chess.example"
    assert venue.ai_activity_tags == result.activity_tags
    assert venue.ai_confidence_scores == result.confidence_scores
    assert as_utc(venue.last_ai_update) == classified_at


def test_venue_without_text_is_skipped(db_session):
    service = _service()
    (place,) = store_places(db_session, make_record(name="Unit 4", categories=()))

    venue, result = asyncio.run(service.classify_venue(db_session, str(place.id)))

    assert not result.refreshed
    assert result.diagnostics == ["classification:skipped-no-text"]
    assert venue.ai_activity_tags == []
    assert venue.last_ai_update is None


def test_classify_places_is_bounded(db_session):
    service = _service()
    places = store_places(
        db_session,
        make_record(provider_place_id="node:1", name="Chess Corner Cafe"),
        make_record(provider_place_id="node:2", name="Strike Bowling Alley", lat=13.70),
        make_record(provider_place_id="node:3", name="Summit Climbing Gym", lat=13.80),
    )

    classified = asyncio.run(service.classify_places(db_session, [place.id for place in places], limit=2))
    again = asyncio.run(service.classify_places(db_session, [place.id for place in places], limit=5))

    assert classified == 2
    assert again == 1


def test_unknown_venue_is_not_found(db_session):
    with pytest.raises(NotFound):
        asyncio.run(_service().classify_venue(db_session, "not-a-uuid"))
