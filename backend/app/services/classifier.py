from __future__ import annotations

import json
import logging
import math
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from threading import Lock
from typing import Any, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..database import run_sync
from ..errors import PersistenceError
from ..models import Place, Venue
from .activities import ACTIVITY_CATALOG, ACTIVITY_NAMES, filter_activity_names, to_activity_name
from .place_repository import as_utc, ensure_venue, resolve_venue

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 2000
MAX_REVIEW_LENGTH = 400
MAX_REVIEW_COUNT = 10
MAX_TAGS = 5


class ClassifierError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_permanent(self) -> bool:
        """Rejected credentials will not recover by retrying."""
        return self.status_code in (401, 403)


@dataclass
class ClassifierInput:
    venue_name: str
    description: str | None
    reviews: list[str]
    keywords: list[str]
    existing_tags: list[str] = field(default_factory=list)
    verified_tags: list[str] = field(default_factory=list)

    def has_text(self) -> bool:
        return bool(self.description or self.reviews or self.keywords)


@dataclass
class ClassificationResult:
    activity_tags: list[str]
    confidence_scores: dict[str, float]
    classified_at: datetime | None
    refreshed: bool = False
    diagnostics: list[str] = field(default_factory=list)


class ClassifierBackend(Protocol):
    async def classify(self, payload: ClassifierInput) -> dict[str, Any]: ...


def normalize_description(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    return value.strip()[:MAX_DESCRIPTION_LENGTH]


def normalize_reviews(values: list[str] | None) -> list[str]:
    cleaned = [value.strip() for value in values or [] if value and value.strip()]
    return [value[:MAX_REVIEW_LENGTH] for value in cleaned[:MAX_REVIEW_COUNT]]


def clamp_score(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:
        return None
    return round(min(1.0, max(0.0, number)), 3)


def _resolve_confidence(source: dict[str, Any] | None, tag: str) -> float | None:
    if not isinstance(source, dict):
        return None
    for key in (tag, tag.lower(), tag.replace(" ", "_"), tag.lower().replace(" ", "_")):
        score = clamp_score(source.get(key))
        if score is not None:
            return score
    return None


def normalize_classification(payload: dict[str, Any]) -> tuple[list[str], dict[str, float]]:
    tags: list[str] = []
    for raw_tag in payload.get("tags") or []:
        name = to_activity_name(str(raw_tag))
        if name and name not in tags:
            tags.append(name)
    tags = tags[:MAX_TAGS]

    confidence: dict[str, float] = {}
    for tag in tags:
        score = _resolve_confidence(payload.get("confidence"), tag)
        if score is not None:
            confidence[tag] = score

    if not confidence:
        total = len(tags)
        confidence = {tag: round((total - index) / total, 3) for index, tag in enumerate(tags)}
    return tags, confidence


def build_prompt(payload: ClassifierInput) -> str:
    reviews = "\n".join(f"{index}. {review}" for index, review in enumerate(payload.reviews, start=1))
    return "\n\n".join(
        [
            "You are an activity classification engine. Decide which activities a venue supports.",
            f"Allowed activities (use only these labels): {', '.join(ACTIVITY_NAMES)}.",
            'Return STRICT JSON shaped {"tags": string[], "confidence": {activity: number}}. '
            f"Order tags by descending confidence and return at most {MAX_TAGS}.",
            f"Venue Name: {payload.venue_name}",
            f"Description:\n{payload.description}" if payload.description else "Description: None provided.",
            f"Keywords: {', '.join(payload.keywords) or 'None provided.'}",
            f"Reviews:\n{reviews or 'None provided.'}",
            f"Existing model tags: {', '.join(payload.existing_tags) or 'none'}.",
            f"Verified by users: {', '.join(payload.verified_tags) or 'none'}.",
            "If there is no evidence for any activity, return an empty array for tags.",
        ]
    )


class KeywordActivityBackend:
    """Deterministic keyword and category evidence scoring."""

    async def classify(self, payload: ClassifierInput) -> dict[str, Any]:
        name_text = payload.venue_name.lower()
        body_text = " ".join([payload.description or "", *payload.keywords]).lower()
        review_texts = [review.lower() for review in payload.reviews]
        keyword_set = {keyword.lower() for keyword in payload.keywords}

        scores: dict[str, float] = {}
        for activity in ACTIVITY_CATALOG:
            body_hits = [keyword for keyword in activity.keywords if keyword in body_text]
            name_hit = any(keyword in name_text for keyword in activity.keywords)
            review_mentions = sum(
                1 for review in review_texts if any(keyword in review for keyword in activity.keywords)
            )
            if not (body_hits or name_hit or review_mentions):
                continue
            score = 0.0
            if name_hit:
                score += 0.35
            if body_hits:
                score += 0.3 + 0.1 * (len(body_hits) - 1)
            score += min(0.2, 0.05 * review_mentions)
            if keyword_set & set(activity.categories):
                score += 0.1
            scores[activity.name] = round(min(0.95, score), 3)

        ranked = sorted(scores, key=lambda name: (-scores[name], name))[:MAX_TAGS]
        return {"tags": ranked, "confidence": {name: scores[name] for name in ranked}}


class ModelActivityBackend:
    """Chat-completions style inference endpoint that answers in JSON."""

    def __init__(self, api_key: str, base_url: str, model: str, timeout_seconds: float = 20.0) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds

    async def classify(self, payload: ClassifierInput) -> dict[str, Any]:
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": build_prompt(payload)}],
            "response_format": {"type": "json_object"},
            "temperature": 0,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as exc:
            raise ClassifierError(f"Classifier request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ClassifierError(f"Classifier request failed ({response.status_code})", status_code=response.status_code)

        try:
            text = response.json()["choices"][0]["message"]["content"]
            parsed = json.loads(text)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ClassifierError("Failed to parse classification response") from exc
        if not isinstance(parsed, dict):
            raise ClassifierError("Classification response must be a JSON object")
        return parsed


class ActivityClassifier:
    """Activity classifier with model-first and deterministic fallback behavior.

    A failed model call pauses the model for ``model_retry_seconds``; rejected
    credentials pause it for the life of the process.
    """

    def __init__(
        self,
        ttl_seconds: int,
        model_backend: ClassifierBackend | None = None,
        fallback_backend: ClassifierBackend | None = None,
        model_retry_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._model_backend = model_backend
        self._fallback_backend = fallback_backend or KeywordActivityBackend()
        self.model_retry_seconds = model_retry_seconds
        self._clock = clock
        self._model_paused_until: float | None = None
        self._model_lock = Lock()

    def is_fresh(self, venue: Venue, now: datetime) -> bool:
        if venue.last_ai_update is None or not venue.ai_activity_tags:
            return False
        return now - as_utc(venue.last_ai_update) <= self.ttl

    def model_available(self) -> bool:
        if self._model_backend is None:
            return False
        with self._model_lock:
            return self._model_paused_until is None or self._clock() >= self._model_paused_until

    def _mark_model_failed(self, exc: ClassifierError) -> None:
        with self._model_lock:
            if exc.is_permanent:
                self._model_paused_until = math.inf
            else:
                self._model_paused_until = self._clock() + self.model_retry_seconds
        logger.warning("Activity model inference failed; using keyword fallback: %s", exc)

    async def _infer(self, payload: ClassifierInput) -> dict[str, Any]:
        if self._model_backend is not None and self.model_available():
            try:
                result = await self._model_backend.classify(payload)
            except ClassifierError as exc:
                self._mark_model_failed(exc)
            else:
                with self._model_lock:
                    self._model_paused_until = None
                return result
        return await self._fallback_backend.classify(payload)

    def build_input(self, venue: Venue) -> ClassifierInput:
        keywords: list[str] = []
        if venue.place is not None:
            for value in [*(venue.place.categories or []), *(venue.place.tags or [])]:
                if value not in keywords:
                    keywords.append(value)
        description = venue.raw_description
        if description is None and venue.place is not None:
            description = venue.place.description
        return ClassifierInput(
            venue_name=venue.name or "Untitled venue",
            description=normalize_description(description),
            reviews=normalize_reviews(venue.raw_reviews),
            keywords=keywords,
            existing_tags=filter_activity_names(venue.ai_activity_tags),
            verified_tags=filter_activity_names(venue.verified_activities),
        )

    async def classify(self, venue: Venue, *, force: bool = False, now: datetime | None = None) -> ClassificationResult:
        current = now or datetime.now(timezone.utc)
        cached = ClassificationResult(
            activity_tags=list(venue.ai_activity_tags or []),
            confidence_scores=dict(venue.ai_confidence_scores or {}),
            classified_at=venue.last_ai_update,
        )
        if not force and self.is_fresh(venue, current):
            cached.diagnostics.append("classification:skipped-up-to-date")
            return cached

        payload = self.build_input(venue)
        if not payload.has_text():
            cached.diagnostics.append("classification:skipped-no-text")
            return cached

        tags, confidence = normalize_classification(await self._infer(payload))
        if not tags:
            cached.diagnostics.append("classification:return-empty")
            return cached

        venue.ai_activity_tags = tags
        venue.ai_confidence_scores = confidence
        venue.last_ai_update = current
        verified = set(filter_activity_names(venue.verified_activities))
        venue.needs_verification = any(tag not in verified for tag in tags)
        return ClassificationResult(
            activity_tags=tags,
            confidence_scores=confidence,
            classified_at=current,
            refreshed=True,
            diagnostics=["classification:refreshed"],
        )


class ClassificationService:
    def __init__(self, classifier: ActivityClassifier) -> None:
        self.classifier = classifier

    @staticmethod
    def _load_venue(db: Session, venue_id: str) -> Venue:
        venue = resolve_venue(db, venue_id)
        venue.place  # read by build_input
        return venue

    @staticmethod
    def _store_venue(db: Session, venue: Venue, venue_id: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to store venue classification", extra={"venue_id": venue_id})
            raise PersistenceError("Failed to store venue classification") from exc
        db.refresh(venue)

    async def classify_venue(self, db: Session, venue_id: str, force: bool = False) -> tuple[Venue, ClassificationResult]:
        venue = await run_sync(db, self._load_venue, db, venue_id)
        result = await self.classifier.classify(venue, force=force)
        await run_sync(db, self._store_venue, db, venue, venue_id)
        return venue, result

    def _stale_venues(self, db: Session, place_ids: list[uuid.UUID], limit: int, now: datetime) -> list[Venue]:
        places = db.scalars(select(Place).where(Place.id.in_(place_ids))).all()
        pending: list[Venue] = []
        for place in sorted(places, key=lambda item: str(item.id)):
            if len(pending) >= limit:
                break
            venue = ensure_venue(db, place)
            if not self.classifier.is_fresh(venue, now):
                pending.append(venue)
        return pending

    @staticmethod
    def _commit(db: Session) -> None:
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to store venue classifications") from exc

    async def classify_places(self, db: Session, place_ids: list[uuid.UUID], limit: int) -> int:
        """Classify venues for places with no or expired classification, at most ``limit`` of them."""
        if limit <= 0 or not place_ids:
            return 0
        now = datetime.now(timezone.utc)
        pending = await run_sync(db, self._stale_venues, db, place_ids, limit, now)
        classified = 0
        for venue in pending:
            result = await self.classifier.classify(venue, now=now)
            if result.refreshed:
                classified += 1
        await run_sync(db, self._commit, db)
        return classified


def build_activity_classifier() -> ActivityClassifier:
    model_backend: ClassifierBackend | None = None
    if settings.enable_model_classifier and settings.classifier_api_key.strip():
        model_backend = ModelActivityBackend(
            api_key=settings.classifier_api_key.strip(),
            base_url=settings.classifier_base_url,
            model=settings.classifier_model,
            timeout_seconds=settings.classifier_timeout_seconds,
        )
    return ActivityClassifier(
        settings.classification_ttl_seconds,
        model_backend=model_backend,
        model_retry_seconds=settings.classifier_retry_seconds,
    )


@lru_cache(maxsize=1)
def get_classification_service() -> ClassificationService:
    return ClassificationService(build_activity_classifier())
