"""Deterministic compatibility scoring of one provider against one situation.

The score is an additive heuristic: every bonus below is applied independently
and the total is capped at 100. Nothing here touches storage or clocks, so the
same inputs always produce the same score, reasons and package.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from app.models import PresencePackage, ProviderProfile

MAX_SCORE = 100
MAX_REASONS = 4

CATEGORY_BONUS = 30
TOP_RATED_BONUS = 20
HIGHLY_RATED_BONUS = 10
ID_VERIFIED_BONUS = 10
BACKGROUND_CHECK_BONUS = 10
VIDEO_INTRO_BONUS = 5
RESPONSIVE_BONUS = 10
COMPLETION_BONUS = 10
EXPERIENCE_BONUS = 10
URGENT_AVAILABLE_BONUS = 15
SPECIALTY_BONUS = 8
SKILL_BONUS = 5
KEYWORD_WEIGHT = 5


@dataclass
class MatchScore:
    profile_id: str
    score: int
    reasons: List[str] = field(default_factory=list)
    recommended_package: Optional[PresencePackage] = None


def _package_fit(package: PresencePackage, situation_lower: str) -> float:
    keywords = package.description.lower().split()
    hits = sum(1 for keyword in keywords if keyword in situation_lower)
    return package.rating * 10 + hits * KEYWORD_WEIGHT


def select_package(packages: Iterable[PresencePackage], situation_lower: str) -> Optional[PresencePackage]:
    best: Optional[PresencePackage] = None
    best_fit = 0.0
    for package in packages:
        fit = _package_fit(package, situation_lower)
        # Strict comparison keeps the first package on ties.
        if best is None or fit > best_fit:
            best, best_fit = package, fit
    return best


def score_provider(
    profile: ProviderProfile,
    situation: str,
    category: str,
    urgency: str,
    requirements: Optional[Iterable[str]] = None,
) -> MatchScore:
    score = 0
    reasons: List[str] = []
    situation_lower = (situation or "").lower()

    matching = [p for p in profile.presence_packages if p.is_active and p.category == category]
    package = None
    if matching:
        score += CATEGORY_BONUS
        reasons.append(f"Specializes in {category} events")
        package = select_package(matching, situation_lower)

    rating = profile.average_rating
    if rating >= 4.5:
        score += TOP_RATED_BONUS
        reasons.append("Top-rated companion (4.5+)")
    elif rating >= 4.0:
        score += HIGHLY_RATED_BONUS
        reasons.append("Highly rated")

    flags = profile.verification_status
    if flags.id_verified:
        score += ID_VERIFIED_BONUS
        reasons.append("ID verified")
    if flags.background_checked:
        score += BACKGROUND_CHECK_BONUS
        reasons.append("Background checked")
    if flags.video_intro:
        score += VIDEO_INTRO_BONUS
        reasons.append("Video introduction available")

    if profile.response_rate >= 90:
        score += RESPONSIVE_BONUS
        reasons.append("Very responsive")
    if profile.completion_rate >= 95:
        score += COMPLETION_BONUS
        reasons.append("Excellent completion rate")
    if profile.total_bookings >= 10:
        score += EXPERIENCE_BONUS
        reasons.append("Experienced companion")

    if urgency == "urgent" and profile.is_available_now:
        score += URGENT_AVAILABLE_BONUS
        reasons.append("Available now for urgent request")

    for specialty in profile.specialties:
        if specialty.strip() and specialty.lower() in situation_lower:
            score += SPECIALTY_BONUS
            reasons.append(f"Expert in {specialty}")
            break

    skills = [skill.lower() for skill in profile.skills]
    wanted = [req.strip().lower() for req in (requirements or []) if req and req.strip()]
    skill_matches = [req for req in wanted if any(req in skill for skill in skills)]
    if skill_matches:
        score += SKILL_BONUS * len(skill_matches)
        reasons.append("Matches your specific requirements")

    return MatchScore(
        profile_id=profile.id,
        score=max(0, min(score, MAX_SCORE)),
        reasons=reasons[:MAX_REASONS],
        recommended_package=package,
    )
