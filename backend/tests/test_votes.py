import pytest
from sqlalchemy import func, select

from app.errors import NotFound, RateLimited, ValidationError
from app.models import VenueActivityVote
from app.services.place_repository import ensure_venue
from app.services.rate_limit import RateLimiter
from app.services.votes import (
    VerificationRules,
    VoteService,
    VoteTotals,
    activity_score,
    activity_status,
    activity_summary,
    compute_verification,
    parse_vote,
    search_venue_activities,
)

from conftest import make_record, store_places

RULES = VerificationRules()


def _classified_venue(db, name="Corner Cafe", tags=("Chess",), confidence=None, **record_overrides):
    (place,) = store_places(db, make_record(name=name, **record_overrides))
    venue = ensure_venue(db, place)
    venue.ai_activity_tags = list(tags)
    venue.ai_confidence_scores = confidence or {tag: 0.6 for tag in tags}
    venue.needs_verification = True
    db.commit()
    return venue


def test_activity_score_is_deterministic():
    assert activity_score(0.9, 2, 1, True, False) == pytest.approx(25.54)
    assert activity_score(None, 0, 0, False, True) == 15.0
    assert activity_score(1.7, 0, 0, False, False) == 0.6


@pytest.mark.parametrize(
    ("value", "expected"),
    [(True, True), (False, False), (1, True), (0, False), ("yes", True), (" FALSE ", False)],
)
def test_parse_vote_accepts_boolean_forms(value, expected):
    assert parse_vote(value) is expected


@pytest.mark.parametrize("value", [None, 2, "maybe", 0.5])
def test_parse_vote_rejects_other_values(value):
    with pytest.raises(ValidationError):
        parse_vote(value)


def test_activity_status_thresholds():
    assert activity_status(0.4, VoteTotals(yes=2, no=0), RULES) == "verified"
    assert activity_status(0.4, VoteTotals(yes=1, no=0), RULES) == "ambiguous"
    assert activity_status(0.95, VoteTotals(yes=1, no=0), RULES) == "verified"
    assert activity_status(0.95, VoteTotals(yes=1, no=1), RULES) == "ambiguous"
    assert activity_status(0.95, VoteTotals(yes=0, no=2), RULES) == "rejected"


def test_compute_verification_covers_voted_and_classified_activities():
    verification = compute_verification(
        ["Chess", "Bowling"],
        {"Chess": 0.5, "Bowling": 0.5},
        {"Chess": VoteTotals(yes=3), "Bowling": VoteTotals(no=2), "Yoga": VoteTotals(yes=2)},
        RULES,
    )
    assert verification.verified_activities == ["Chess", "Yoga"]
    assert verification.needs_verification is False


def test_repeat_vote_replaces_previous_vote(db_session):
    venue = _classified_venue(db_session)
    service = VoteService(RULES)

    service.record_vote(db_session, str(venue.id), "user-a", "chess", True)
    outcome = service.record_vote(db_session, str(venue.id), "user-a", "Chess", False)

    rows = db_session.scalar(select(func.count()).select_from(VenueActivityVote))
    assert rows == 1
    assert outcome.activity_name == "Chess"
    assert outcome.vote is False
    assert outcome.totals == VoteTotals(yes=0, no=1)


def test_votes_flip_verification(db_session):
    venue = _classified_venue(db_session)
    service = VoteService(RULES)

    first = service.record_vote(db_session, str(venue.id), "user-a", "Chess", True)
    assert first.verification.verified_activities == []
    assert first.verification.needs_verification is True

    second = service.record_vote(db_session, str(venue.id), "user-b", "Chess", "yes")
    assert second.totals == VoteTotals(yes=2, no=0)
    assert second.verification.verified_activities == ["Chess"]
    assert second.verification.needs_verification is False

    db_session.refresh(venue)
    assert venue.verified_activities == ["Chess"]
    assert venue.needs_verification is False

    third = service.record_vote(db_session, str(venue.id), "user-a", "Chess", False)
    assert third.totals == VoteTotals(yes=1, no=1)
    assert third.verification.verified_activities == []
    assert third.verification.needs_verification is True


def test_vote_on_place_attaches_venue(db_session):
    (place,) = store_places(db_session, make_record())
    outcome = VoteService(RULES).record_vote(db_session, str(place.id), "user-a", "Board Games", 1)

    assert outcome.totals == VoteTotals(yes=1, no=0)
    assert outcome.verification.needs_verification is True


def test_vote_validation(db_session):
    venue = _classified_venue(db_session)
    service = VoteService(RULES)

    with pytest.raises(ValidationError):
        service.record_vote(db_session, str(venue.id), "user-a", "Underwater Hockey", True)
    with pytest.raises(ValidationError):
        service.record_vote(db_session, str(venue.id), "user-a", "Chess", "perhaps")
    with pytest.raises(NotFound):
        service.record_vote(db_session, "00000000-0000-0000-0000-000000000000", "user-a", "Chess", True)


def test_search_ranks_by_activity_score(db_session):
    strong = _classified_venue(db_session, confidence={"Chess": 0.9})
    weak = _classified_venue(
        db_session,
        name="Night Owl Bar",
        provider_place_id="node:2",
        lat=13.70,
        categories=("nightlife",),
        confidence={"Chess": 0.3},
    )
    service = VoteService(RULES)
    service.record_vote(db_session, str(strong.id), "user-a", "Chess", True)
    service.record_vote(db_session, str(strong.id), "user-b", "Chess", True)
    service.record_vote(db_session, str(strong.id), "user-c", "Chess", False)

    results = search_venue_activities(db_session, "chess", limit=10)

    assert [row["venue_id"] for row in results] == [str(strong.id), str(weak.id)]
    top = results[0]
    assert top["user_yes_votes"] == 2
    assert top["user_no_votes"] == 1
    assert top["category_match"] is True
    assert top["keyword_match"] is False
    assert top["score"] == pytest.approx(25.54)
    assert results[1]["score"] == pytest.approx(0.18)


def test_search_only_loads_venues_listing_the_activity(db_session):
    chess = _classified_venue(db_session)
    _classified_venue(db_session, name="Sunrise Studio", provider_place_id="node:2", lat=13.70, tags=("Yoga",))
    _classified_venue(db_session, name="Dice Den", provider_place_id="node:3", lat=13.80, tags=("Board Games",))
    verified_only = _classified_venue(db_session, name="Rook Club", provider_place_id="node:4", lat=13.60, tags=())
    verified_only.verified_activities = ["Chess"]
    db_session.commit()

    results = search_venue_activities(db_session, "chess")

    assert {row["venue_id"] for row in results} == {str(chess.id), str(verified_only.id)}
    assert len(search_venue_activities(db_session, "chess", max_candidates=1)) == 1


def test_search_rejects_unknown_activity(db_session):
    with pytest.raises(ValidationError):
        search_venue_activities(db_session, "underwater hockey")


def test_activity_summary_buckets(db_session):
    _classified_venue(db_session, tags=("Chess", "Board Games"), confidence={"Chess": 0.85, "Board Games": 0.55})

    summary = {row["activity"]: row for row in activity_summary(db_session)}

    assert summary["Chess"]["likely_count"] == 1
    assert summary["Board Games"]["possible_count"] == 1
    assert summary["Chess"]["needs_review_count"] == 1
    assert summary["Chess"]["average_confidence"] == 0.85
    assert summary["Yoga"]["average_confidence"] is None


def test_rate_limiter_refills_over_time():
    now = [0.0]
    limiter = RateLimiter(clock=lambda: now[0])

    limiter.check("vote:user-a", capacity=2)
    limiter.check("vote:user-a", capacity=2)
    with pytest.raises(RateLimited) as excinfo:
        limiter.check("vote:user-a", capacity=2)
    assert excinfo.value.retry_after_seconds == pytest.approx(30.0)

    limiter.check("vote:user-b", capacity=2)
    now[0] = 31.0
    limiter.check("vote:user-a", capacity=2)


def test_rate_limiter_evicts_oldest_keys_when_full():
    now = [0.0]
    limiter = RateLimiter(clock=lambda: now[0], max_keys=2)

    limiter.check("vote:user-a", capacity=1)
    now[0] = 1.0
    limiter.check("vote:user-b", capacity=1)
    now[0] = 2.0
    limiter.check("vote:user-c", capacity=1)

    assert len(limiter._buckets) == 2
    limiter.check("vote:user-a", capacity=1)
    with pytest.raises(RateLimited):
        limiter.check("vote:user-c", capacity=1)
