from typing import List

from fastapi import APIRouter, Depends, Query

from app.auth import require_actor
from app.models import Actor, Envelope, MatchDetails, MatchEnvelope, MatchMeta, MatchRequest, ProviderProfile
from app.routers.http_errors import raise_http_error
from app.services.errors import MarketplaceError
from app.services.matching import match_service

router = APIRouter(prefix="/matches", tags=["matches"])


@router.post("/find", response_model=MatchEnvelope)
def find_matches(payload: MatchRequest, actor: Actor = Depends(require_actor)):
    result = match_service.find_matches(payload)
    return MatchEnvelope(
        data=result.matches,
        meta=MatchMeta(
            total_matches=result.total_candidates,
            situation={
                "description": payload.situation,
                "category": payload.category,
                "urgency": payload.urgency,
                "date": payload.date,
                "duration": payload.duration,
                "requirements": payload.requirements,
            },
        ),
    )


@router.get("/recommendations", response_model=Envelope[List[ProviderProfile]])
def recommendations(
    limit: int = Query(default=6, ge=1, le=24),
    actor: Actor = Depends(require_actor),
):
    return Envelope(data=match_service.recommendations(limit=limit))


@router.get("/{profile_id}", response_model=Envelope[MatchDetails])
def match_details(profile_id: str, actor: Actor = Depends(require_actor)):
    try:
        return Envelope(data=match_service.match_details(profile_id))
    except MarketplaceError as exc:
        raise_http_error(exc)
