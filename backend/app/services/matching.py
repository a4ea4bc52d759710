import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from app.models import Match, MatchDetails, MatchRequest, ProviderProfile
from app.services.booking_store import BookingStore, booking_store
from app.services.errors import NotFoundError
from app.services.profile_store import ProfileStore, profile_store
from app.services.scoring import score_provider

logger = logging.getLogger(__name__)

SEARCH_RADIUS_KM = 50.0
TOP_MATCHES = 3


@dataclass
class MatchResult:
    matches: List[Match]
    total_candidates: int


class MatchService:
    def __init__(self, profiles: ProfileStore, bookings: Optional[BookingStore] = None) -> None:
        self.profiles = profiles
        self.bookings = bookings

    def find_matches(self, request: MatchRequest) -> MatchResult:
        origin: Optional[Tuple[float, float]] = None
        coordinates = request.location.coordinates
        if coordinates and len(coordinates) >= 2:
            # Client coordinates are [lng, lat].
            origin = (coordinates[1], coordinates[0])

        budget = request.budget
        candidates = self.profiles.list_candidates(
            category=request.category,
            verified_only=request.verified_only,
            origin=origin,
            radius_km=SEARCH_RADIUS_KM,
            rate_min=budget.min if budget else None,
            rate_max=budget.max if budget else None,
        )

        scored = []
        for profile in candidates:
            result = score_provider(
                profile,
                situation=request.situation,
                category=request.category,
                urgency=request.urgency,
                requirements=request.requirements,
            )
            scored.append((profile, result))

        scored.sort(key=lambda item: (-item[1].score, item[0].id))
        matches = []
        for profile, result in scored[:TOP_MATCHES]:
            package = result.recommended_package
            matches.append(
                Match(
                    friend=profile,
                    compatibility=result.score,
                    reasons=result.reasons,
                    recommended_package=package,
                    estimated_total=package.hourly_rate * request.duration if package else None,
                )
            )
        logger.info(
            "Matched category=%s candidates=%d returned=%d",
            request.category,
            len(candidates),
            len(matches),
        )
        return MatchResult(matches=matches, total_candidates=len(candidates))

    def match_details(self, profile_id: str) -> MatchDetails:
        profile = self.profiles.get_profile(profile_id)
        if not profile:
            raise NotFoundError("Friend not found")
        reviews = self.bookings.recent_reviews_for_friend(profile.user_id, limit=5) if self.bookings else []
        return MatchDetails(
            friend=profile,
            reviews=reviews,
            stats={
                "totalBookings": profile.total_bookings,
                "completionRate": profile.completion_rate,
                "responseRate": profile.response_rate,
                "averageResponseTime": profile.response_time,
            },
        )

    def recommendations(self, limit: int = 6) -> List[ProviderProfile]:
        return self.profiles.recommendations(limit=limit)


match_service = MatchService(profile_store, booking_store)
