from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..dependencies import client_ip, get_rate_limiter, require_cron_secret, require_user
from ..schemas import (
    ActivitySummaryEntry,
    ActivitySummaryResponse,
    ClassifyRequest,
    ClassifyResponse,
    VenueActivityMatch,
    VenueSearchResponse,
    VerificationView,
    VoteRequest,
    VoteResponse,
    VoteTotalsView,
)
from ..services.activities import to_activity_name
from ..services.classifier import ClassificationService, get_classification_service
from ..services.rate_limit import RateLimiter
from ..services.votes import VoteService, activity_summary, search_venue_activities, vote_service

router = APIRouter(tags=["venues"])


def get_vote_service() -> VoteService:
    return vote_service


@router.post("/classify", response_model=ClassifyResponse, dependencies=[Depends(require_cron_secret)])
async def classify(
    payload: ClassifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    service: ClassificationService = Depends(get_classification_service),
) -> ClassifyResponse:
    limiter.check(f"classify:{client_ip(request)}", settings.classify_rate_limit_per_minute)
    venue, result = await service.classify_venue(db, payload.venue_id, force=payload.force)
    return ClassifyResponse(
        venue_id=str(venue.id),
        place_id=str(venue.place_id),
        activity_tags=result.activity_tags,
        confidence_scores=result.confidence_scores,
        classified_at=result.classified_at,
        refreshed=result.refreshed,
        needs_verification=venue.needs_verification,
        verified_activities=list(venue.verified_activities or []),
        diagnostics=result.diagnostics,
    )


@router.post("/vote", response_model=VoteResponse)
def vote(
    payload: VoteRequest,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    service: VoteService = Depends(get_vote_service),
) -> VoteResponse:
    limiter.check(f"vote:{user_id}", settings.vote_rate_limit_per_minute)
    outcome = service.record_vote(db, payload.venue_id, user_id, payload.activity_name, payload.vote)
    return VoteResponse(
        venue_id=str(outcome.venue_id),
        activity_name=outcome.activity_name,
        vote=outcome.vote,
        totals=VoteTotalsView(yes=outcome.totals.yes, no=outcome.totals.no),
        verification=VerificationView(
            verified_activities=outcome.verification.verified_activities,
            needs_verification=outcome.verification.needs_verification,
        ),
    )


@router.get("/venues/search", response_model=VenueSearchResponse)
def venues_search(
    activity: str = Query(..., min_length=1),
    limit: int = Query(default=25, ge=1, le=100),
    db: Session = Depends(get_db),
) -> VenueSearchResponse:
    results = search_venue_activities(db, activity, limit=limit)
    return VenueSearchResponse(
        activity=to_activity_name(activity) or activity,
        results=[VenueActivityMatch(**row) for row in results],
    )


@router.get("/activities/summary", response_model=ActivitySummaryResponse)
def activities_summary(
    limit: int = Query(default=400, ge=1, le=2000),
    db: Session = Depends(get_db),
) -> ActivitySummaryResponse:
    return ActivitySummaryResponse(
        activities=[ActivitySummaryEntry(**row) for row in activity_summary(db, max_venues=limit)]
    )
