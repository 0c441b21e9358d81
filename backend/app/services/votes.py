from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import String, case, cast, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ..config import Settings, settings
from ..errors import PersistenceError, ValidationError
from ..models import Place, Venue, VenueActivityVote
from .activities import ACTIVITY_NAMES, category_match, filter_activity_names, keyword_match, to_activity_name
from .place_repository import resolve_venue

logger = logging.getLogger(__name__)

LIKELY_CONFIDENCE = 0.8
POSSIBLE_CONFIDENCE = 0.5
TRUE_VALUES = {"true", "1", "yes", "y"}
FALSE_VALUES = {"false", "0", "no", "n"}


@dataclass(frozen=True)
class VoteTotals:
    yes: int = 0
    no: int = 0


@dataclass
class Verification:
    verified_activities: list[str] = field(default_factory=list)
    needs_verification: bool = False


@dataclass
class VoteOutcome:
    venue_id: uuid.UUID
    activity_name: str
    vote: bool
    totals: VoteTotals
    verification: Verification


@dataclass(frozen=True)
class VerificationRules:
    min_yes: int = 2
    verify_margin: int = 2
    reject_margin: int = 2
    auto_verify_confidence: float = 0.9

    @classmethod
    def from_settings(cls, config: Settings) -> VerificationRules:
        return cls(
            min_yes=config.vote_verify_min_yes,
            verify_margin=config.vote_verify_margin,
            reject_margin=config.vote_reject_margin,
            auto_verify_confidence=config.auto_verify_confidence,
        )


def activity_score(
    ai_confidence: float | None,
    user_yes_votes: int,
    user_no_votes: int,
    category_match: bool,
    keyword_match: bool,
) -> float:
    confidence = max(0.0, min(1.0, ai_confidence or 0.0))
    score = (
        confidence * 0.6
        + user_yes_votes * 10
        - user_no_votes * 10
        + (15 if category_match else 0)
        + (15 if keyword_match else 0)
    )
    return round(score, 3)


def parse_vote(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
    raise ValidationError("vote must be a boolean")


def activity_status(confidence: float | None, totals: VoteTotals, rules: VerificationRules) -> str:
    if totals.no - totals.yes >= rules.reject_margin:
        return "rejected"
    if totals.yes >= rules.min_yes and totals.yes - totals.no >= rules.verify_margin:
        return "verified"
    if confidence is not None and confidence >= rules.auto_verify_confidence and totals.no == 0 and totals.yes >= 1:
        return "verified"
    return "ambiguous"


def compute_verification(
    ai_tags: list[str],
    confidence_scores: dict[str, float],
    totals_by_activity: dict[str, VoteTotals],
    rules: VerificationRules,
) -> Verification:
    activities = sorted(set(filter_activity_names(ai_tags)) | set(totals_by_activity))
    verification = Verification()
    for activity in activities:
        status = activity_status(confidence_scores.get(activity), totals_by_activity.get(activity, VoteTotals()), rules)
        if status == "verified":
            verification.verified_activities.append(activity)
        elif status == "ambiguous":
            verification.needs_verification = True
    return verification


def _totals_stmt(venue_ids: list[uuid.UUID]):
    return (
        select(
            VenueActivityVote.venue_id,
            VenueActivityVote.activity_name,
            func.sum(case((VenueActivityVote.vote.is_(True), 1), else_=0)).label("yes_votes"),
            func.sum(case((VenueActivityVote.vote.is_(False), 1), else_=0)).label("no_votes"),
        )
        .where(VenueActivityVote.venue_id.in_(venue_ids))
        .group_by(VenueActivityVote.venue_id, VenueActivityVote.activity_name)
    )


def vote_totals_for_venues(db: Session, venue_ids: list[uuid.UUID]) -> dict[uuid.UUID, dict[str, VoteTotals]]:
    if not venue_ids:
        return {}
    totals: dict[uuid.UUID, dict[str, VoteTotals]] = {}
    for row in db.execute(_totals_stmt(venue_ids)):
        totals.setdefault(row.venue_id, {})[row.activity_name] = VoteTotals(
            yes=int(row.yes_votes or 0),
            no=int(row.no_votes or 0),
        )
    return totals


def _upsert_vote(db: Session, venue_id: uuid.UUID, user_id: str, activity_name: str, vote: bool) -> None:
    now = datetime.now(timezone.utc)
    dialect = db.get_bind().dialect.name
    values = {
        "id": uuid.uuid4(),
        "venue_id": venue_id,
        "user_id": user_id,
        "activity_name": activity_name,
        "vote": vote,
        "created_at": now,
        "updated_at": now,
    }
    if dialect in {"postgresql", "sqlite"}:
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        stmt = insert(VenueActivityVote).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["venue_id", "user_id", "activity_name"],
            set_={"vote": stmt.excluded.vote, "updated_at": stmt.excluded.updated_at},
        )
        db.execute(stmt)
        return

    existing = db.scalar(
        select(VenueActivityVote).where(
            VenueActivityVote.venue_id == venue_id,
            VenueActivityVote.user_id == user_id,
            VenueActivityVote.activity_name == activity_name,
        )
    )
    if existing is None:
        db.add(VenueActivityVote(**values))
    else:
        existing.vote = vote
        existing.updated_at = now
    db.flush()


class VoteService:
    def __init__(self, rules: VerificationRules | None = None) -> None:
        self.rules = rules or VerificationRules()

    def refresh_verification(self, db: Session, venue: Venue) -> tuple[dict[str, VoteTotals], Verification]:
        totals = vote_totals_for_venues(db, [venue.id]).get(venue.id, {})
        verification = compute_verification(
            list(venue.ai_activity_tags or []),
            dict(venue.ai_confidence_scores or {}),
            totals,
            self.rules,
        )
        venue.verified_activities = verification.verified_activities
        venue.needs_verification = verification.needs_verification
        return totals, verification

    def record_vote(self, db: Session, venue_id: str, user_id: str, activity_name: str, vote: Any) -> VoteOutcome:
        activity = to_activity_name(activity_name)
        if activity is None:
            raise ValidationError(f"Unknown activity: {activity_name}")
        vote_value = parse_vote(vote)
        venue = resolve_venue(db, venue_id)

        try:
            _upsert_vote(db, venue.id, user_id, activity, vote_value)
            totals, verification = self.refresh_verification(db, venue)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to record activity vote", extra={"venue_id": str(venue.id)})
            raise PersistenceError("Failed to record vote") from exc

        return VoteOutcome(
            venue_id=venue.id,
            activity_name=activity,
            vote=vote_value,
            totals=totals.get(activity, VoteTotals()),
            verification=verification,
        )


def _lists_activity(column: Any, activity: str) -> Any:
    # Coarse text match on the serialized list; callers still check membership exactly.
    return cast(column, String).contains(f'"{activity}"', autoescape=True)


def search_venue_activities(
    db: Session, activity_name: str, limit: int = 25, max_candidates: int = 2000
) -> list[dict[str, Any]]:
    activity = to_activity_name(activity_name)
    if activity is None:
        raise ValidationError(f"Unknown activity: {activity_name}")

    stmt = (
        select(Venue)
        .where(
            or_(
                _lists_activity(Venue.ai_activity_tags, activity),
                _lists_activity(Venue.verified_activities, activity),
            )
        )
        .options(selectinload(Venue.place))
        .order_by(Venue.created_at)
        .limit(max_candidates)
    )
    venues = db.scalars(stmt).all()
    candidates = [
        venue
        for venue in venues
        if activity in filter_activity_names(venue.ai_activity_tags)
        or activity in filter_activity_names(venue.verified_activities)
    ]
    totals = vote_totals_for_venues(db, [venue.id for venue in candidates])

    ranked: list[dict[str, Any]] = []
    for venue in candidates:
        place: Place = venue.place
        verified = activity in (venue.verified_activities or [])
        confidence = (venue.ai_confidence_scores or {}).get(activity)
        if confidence is None and verified:
            confidence = 1.0
        votes = totals.get(venue.id, {}).get(activity, VoteTotals())
        categories = list(place.categories or [])
        texts = [place.name, *(place.tags or [])]
        ranked.append(
            {
                "venue_id": str(venue.id),
                "place_id": str(place.id),
                "venue_name": venue.name,
                "lat": place.lat,
                "lng": place.lng,
                "activity": activity,
                "ai_confidence": confidence,
                "user_yes_votes": votes.yes,
                "user_no_votes": votes.no,
                "category_match": category_match(activity, categories),
                "keyword_match": keyword_match(activity, texts),
                "verified": verified,
                "needs_verification": bool(venue.needs_verification and not verified),
            }
        )
        ranked[-1]["score"] = activity_score(
            confidence,
            votes.yes,
            votes.no,
            ranked[-1]["category_match"],
            ranked[-1]["keyword_match"],
        )

    ranked.sort(key=lambda item: (-item["score"], item["venue_name"]))
    return ranked[:limit]


def activity_summary(db: Session, max_venues: int = 400) -> list[dict[str, Any]]:
    venues = db.scalars(select(Venue).order_by(Venue.created_at).limit(max_venues)).all()
    summary: dict[str, dict[str, Any]] = {
        name: {
            "activity": name,
            "verified_count": 0,
            "likely_count": 0,
            "possible_count": 0,
            "needs_review_count": 0,
            "_confidence_sum": 0.0,
            "_confidence_count": 0,
        }
        for name in ACTIVITY_NAMES
    }

    for venue in venues:
        verified = set(filter_activity_names(venue.verified_activities))
        ai_tags = set(filter_activity_names(venue.ai_activity_tags))
        scores = venue.ai_confidence_scores or {}
        for name in ACTIVITY_NAMES:
            confidence = scores.get(name)
            if name not in verified and (name not in ai_tags or confidence is None):
                continue
            entry = summary[name]
            if name in verified:
                entry["verified_count"] += 1
            elif confidence is not None and confidence >= LIKELY_CONFIDENCE:
                entry["likely_count"] += 1
            elif confidence is not None and confidence >= POSSIBLE_CONFIDENCE:
                entry["possible_count"] += 1
            if venue.needs_verification:
                entry["needs_review_count"] += 1
            if confidence is not None:
                entry["_confidence_sum"] += float(confidence)
                entry["_confidence_count"] += 1

    results: list[dict[str, Any]] = []
    for entry in summary.values():
        count = entry.pop("_confidence_count")
        total = entry.pop("_confidence_sum")
        entry["average_confidence"] = round(total / count, 3) if count else None
        results.append(entry)
    results.sort(
        key=lambda item: (
            -item["verified_count"],
            -item["likely_count"],
            -item["possible_count"],
            -(item["average_confidence"] or 0.0),
            item["activity"],
        )
    )
    return results


vote_service = VoteService(VerificationRules.from_settings(settings))
