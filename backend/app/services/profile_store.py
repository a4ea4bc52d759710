import logging
import math
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from app.models import (
    AvailabilityUpdateRequest,
    EmergencyContact,
    PresencePackage,
    PresencePackageCreateRequest,
    PresencePackageUpdateRequest,
    ProviderLocation,
    ProviderProfile,
    ProviderProfileCreateRequest,
    User,
    VerificationFlags,
    VerificationUpdateRequest,
)
from app.services.document_store import DocumentStore, document_store
from app.services.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

USERS = "users"
PROFILES = "provider_profiles"

MIN_HOURLY_RATE = 20
MAX_HOURLY_RATE = 200


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def running_mean(old_mean: float, old_count: int, new_value: float) -> float:
    return (old_mean * old_count + new_value) / (old_count + 1)


class ProfileStore:
    """Users and provider ("friend") profiles with their presence packages."""

    def __init__(self, documents: DocumentStore, seed: bool = True) -> None:
        self.documents = documents
        if seed:
            self._seed_if_needed()

    # ------------------------------------------------------------ users

    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        phone: str = "",
        role: str = "user",
        user_id: Optional[str] = None,
    ) -> User:
        email = email.strip().lower()
        if not email or "@" not in email:
            raise ValidationError("A valid email is required")
        now = _now()
        user = User(
            id=user_id or f"usr_{uuid4().hex[:10]}",
            email=email,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            phone=phone,
            role=role,  # type: ignore[arg-type]
            created_at=now,
            updated_at=now,
        )
        with self.documents.transaction() as conn:
            if self.documents.count(conn, USERS, "email = ?", (email,)):
                raise ConflictError("Email already exists")
            self.documents.insert(conn, USERS, _dump(user))
        logger.info("User registered: %s", user.id)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self.documents.transaction() as conn:
            loaded = self._load_user(conn, user_id)
        return loaded[0] if loaded else None

    def update_emergency_contact(self, user_id: str, contact: EmergencyContact) -> User:
        with self.documents.transaction() as conn:
            user, version = self._require_user(conn, user_id)
            user.emergency_contact = contact
            user.updated_at = _now()
            self.documents.replace(conn, USERS, _dump(user), version)
        return user

    def deactivate_user(self, user_id: str) -> User:
        with self.documents.transaction() as conn:
            user, version = self._require_user(conn, user_id)
            user.is_active = False
            user.updated_at = _now()
            self.documents.replace(conn, USERS, _dump(user), version)
            profile_row = self._load_profile_for_user(conn, user_id)
            if profile_row:
                profile, profile_version = profile_row
                profile.is_active = False
                profile.updated_at = _now()
                self.documents.replace(conn, PROFILES, _dump(profile), profile_version)
        logger.info("User deactivated: %s", user_id)
        return user

    def list_staff_user_ids(self) -> List[str]:
        with self.documents.transaction() as conn:
            rows = self.documents.find(conn, USERS, "role IN ('admin', 'moderator') AND is_active = '1'")
        return [doc["id"] for doc, _ in rows]

    def _load_user(self, conn: sqlite3.Connection, user_id: str) -> Optional[Tuple[User, int]]:
        row = self.documents.fetch(conn, USERS, user_id)
        if not row:
            return None
        return User.model_validate(row[0]), row[1]

    def _require_user(self, conn: sqlite3.Connection, user_id: str) -> Tuple[User, int]:
        loaded = self._load_user(conn, user_id)
        if not loaded:
            raise NotFoundError("User not found")
        return loaded

    # ------------------------------------------------------------ profiles

    def create_profile(self, user_id: str, request: ProviderProfileCreateRequest) -> ProviderProfile:
        now = _now()
        profile = ProviderProfile(
            id=f"fp_{uuid4().hex[:10]}",
            user_id=user_id,
            bio=request.bio,
            headline=request.headline,
            specialties=request.specialties,
            skills=request.skills,
            languages=request.languages,
            location=ProviderLocation(coordinates=request.coordinates or [0.0, 0.0], city=request.city),
            service_radius=request.service_radius,
            created_at=now,
            updated_at=now,
        )
        with self.documents.transaction() as conn:
            user, version = self._require_user(conn, user_id)
            if self._load_profile_for_user(conn, user_id):
                raise ConflictError("Friend profile already exists")
            self.documents.insert(conn, PROFILES, _dump(profile))
            user.is_friend = True
            user.updated_at = now
            self.documents.replace(conn, USERS, _dump(user), version)
        logger.info("Provider profile %s created for %s", profile.id, user_id)
        return profile

    def get_profile(self, profile_id: str) -> Optional[ProviderProfile]:
        with self.documents.transaction() as conn:
            row = self.documents.fetch(conn, PROFILES, profile_id)
        return ProviderProfile.model_validate(row[0]) if row else None

    def get_profile_for_user(self, user_id: str) -> Optional[ProviderProfile]:
        with self.documents.transaction() as conn:
            loaded = self._load_profile_for_user(conn, user_id)
        return loaded[0] if loaded else None

    def add_package(self, user_id: str, request: PresencePackageCreateRequest) -> PresencePackage:
        if request.min_hours > request.max_hours:
            raise ValidationError("minHours cannot exceed maxHours")
        package = PresencePackage(
            id=f"pkg_{uuid4().hex[:10]}",
            **request.model_dump(),
            rating=0.0,
            review_count=0,
            created_at=_now(),
        )
        with self.documents.transaction() as conn:
            profile, version = self._require_profile_for_user(conn, user_id)
            profile.presence_packages.append(package)
            profile.updated_at = _now()
            self.documents.replace(conn, PROFILES, _dump(profile), version)
        return package

    def update_package(self, user_id: str, package_id: str, request: PresencePackageUpdateRequest) -> PresencePackage:
        changes = request.model_dump(exclude_none=True)
        with self.documents.transaction() as conn:
            profile, version = self._require_profile_for_user(conn, user_id)
            package = profile.find_package(package_id)
            if not package:
                raise NotFoundError("Package not found")
            # Rating and review count only move through reviews.
            for key, value in changes.items():
                setattr(package, key, value)
            if not MIN_HOURLY_RATE <= package.hourly_rate <= MAX_HOURLY_RATE:
                raise ValidationError(f"hourlyRate must be between {MIN_HOURLY_RATE} and {MAX_HOURLY_RATE}")
            if package.min_hours > package.max_hours:
                raise ValidationError("minHours cannot exceed maxHours")
            profile.updated_at = _now()
            self.documents.replace(conn, PROFILES, _dump(profile), version)
        return package

    def update_availability(self, user_id: str, request: AvailabilityUpdateRequest) -> ProviderProfile:
        with self.documents.transaction() as conn:
            profile, version = self._require_profile_for_user(conn, user_id)
            profile.availability = request.availability
            if request.is_available_now is not None:
                profile.is_available_now = request.is_available_now
            profile.updated_at = _now()
            self.documents.replace(conn, PROFILES, _dump(profile), version)
        return profile

    def set_verification(self, profile_id: str, request: VerificationUpdateRequest) -> ProviderProfile:
        with self.documents.transaction() as conn:
            row = self.documents.fetch(conn, PROFILES, profile_id)
            if not row:
                raise NotFoundError("Friend profile not found")
            profile = ProviderProfile.model_validate(row[0])
            flags = profile.verification_status.model_dump()
            flags.update(request.model_dump(exclude_none=True))
            profile.verification_status = VerificationFlags(**flags)
            profile.updated_at = _now()
            self.documents.replace(conn, PROFILES, _dump(profile), row[1])

            user, user_version = self._require_user(conn, profile.user_id)
            user.is_verified = profile.verification_status.id_verified
            user.verification_status = "verified" if user.is_verified else "in-review"
            user.updated_at = _now()
            self.documents.replace(conn, USERS, _dump(user), user_version)
        return profile

    def list_candidates(
        self,
        category: str,
        verified_only: bool = False,
        origin: Optional[Tuple[float, float]] = None,
        radius_km: float = 50.0,
        rate_min: Optional[float] = None,
        rate_max: Optional[float] = None,
    ) -> List[ProviderProfile]:
        """Active profiles that offer an active package in ``category``, in id order.

        ``origin`` is ``(lat, lng)``.
        """
        with self.documents.transaction() as conn:
            rows = self.documents.find(conn, PROFILES, "is_active = '1'", order_by="id")
            inactive_users = {
                doc["id"] for doc, _ in self.documents.find(conn, USERS, "is_active = '0'")
            }

        result: List[ProviderProfile] = []
        for doc, _ in rows:
            profile = ProviderProfile.model_validate(doc)
            if profile.user_id in inactive_users:
                continue
            if verified_only and not profile.verification_status.id_verified:
                continue
            packages = [p for p in profile.presence_packages if p.is_active and p.category == category]
            if not packages:
                continue
            if rate_min is not None or rate_max is not None:
                low = rate_min if rate_min is not None else float("-inf")
                high = rate_max if rate_max is not None else float("inf")
                if not any(low <= p.hourly_rate <= high for p in packages):
                    continue
            if origin is not None:
                lng, lat = profile.location.coordinates[0], profile.location.coordinates[1]
                if self._haversine_km(origin[0], origin[1], lat, lng) > radius_km:
                    continue
            result.append(profile)
        return result

    def recommendations(self, limit: int = 6) -> List[ProviderProfile]:
        with self.documents.transaction() as conn:
            rows = self.documents.find(conn, PROFILES, "is_active = '1'", order_by="id")
        profiles = [ProviderProfile.model_validate(doc) for doc, _ in rows]
        featured = [p for p in profiles if p.is_featured][:limit]
        if len(featured) < limit:
            extra = [p for p in profiles if not p.is_featured and p.verification_status.id_verified]
            extra.sort(key=lambda p: -p.total_bookings)
            featured.extend(extra[: limit - len(featured)])
        return featured

    # ------------------------------------------------------------ booking side effects

    def record_completion(self, conn: sqlite3.Connection, friend_user_id: str, earnings: float) -> None:
        loaded = self._load_profile_for_user(conn, friend_user_id)
        if not loaded:
            logger.warning("Completed booking for %s has no friend profile", friend_user_id)
            return
        profile, version = loaded
        profile.total_bookings += 1
        profile.total_earnings += earnings
        profile.updated_at = _now()
        self.documents.replace(conn, PROFILES, _dump(profile), version)

    def record_review(self, conn: sqlite3.Connection, friend_user_id: str, package_id: str, rating: int) -> None:
        loaded = self._load_profile_for_user(conn, friend_user_id)
        if loaded:
            profile, version = loaded
            package = profile.find_package(package_id)
            if package:
                package.rating = running_mean(package.rating, package.review_count, rating)
                package.review_count += 1
                profile.updated_at = _now()
                self.documents.replace(conn, PROFILES, _dump(profile), version)

        user_row = self._load_user(conn, friend_user_id)
        if user_row:
            user, user_version = user_row
            user.rating = running_mean(user.rating, user.review_count, rating)
            user.review_count += 1
            user.updated_at = _now()
            self.documents.replace(conn, USERS, _dump(user), user_version)

    def load_friend_and_package(
        self, conn: sqlite3.Connection, friend_user_id: str, package_id: str
    ) -> Tuple[ProviderProfile, PresencePackage]:
        user_row = self._load_user(conn, friend_user_id)
        if not user_row or not user_row[0].is_friend or not user_row[0].is_active:
            raise NotFoundError("Friend not found")
        loaded = self._load_profile_for_user(conn, friend_user_id)
        if not loaded:
            raise NotFoundError("Friend profile not found")
        package = loaded[0].find_package(package_id)
        if not package:
            raise NotFoundError("Package not found")
        return loaded[0], package

    # ------------------------------------------------------------ internals

    def _load_profile_for_user(self, conn: sqlite3.Connection, user_id: str) -> Optional[Tuple[ProviderProfile, int]]:
        rows = self.documents.find(conn, PROFILES, "user_id = ?", (user_id,))
        if not rows:
            return None
        doc, version = rows[0]
        return ProviderProfile.model_validate(doc), version

    def _require_profile_for_user(self, conn: sqlite3.Connection, user_id: str) -> Tuple[ProviderProfile, int]:
        loaded = self._load_profile_for_user(conn, user_id)
        if not loaded:
            raise ForbiddenError("Friend profile required")
        return loaded

    def _haversine_km(self, lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        r = 6371.0
        phi1 = math.radians(lat1)
        phi2 = math.radians(lat2)
        dphi = math.radians(lat2 - lat1)
        dlambda = math.radians(lon2 - lon1)
        a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
        return r * c

    def _seed_if_needed(self) -> None:
        now = _now()
        seed_users = [
            ("user_1", "asha@example.com", "Asha", "Rao", "user", False),
            ("user_2", "ben@example.com", "Ben", "Mathew", "user", False),
            ("admin_1", "ops@example.com", "Ops", "Desk", "admin", False),
            ("friend_1", "meera@example.com", "Meera", "Iyer", "user", True),
            ("friend_2", "karan@example.com", "Karan", "Shah", "user", True),
            ("friend_3", "lena@example.com", "Lena", "Dsouza", "user", True),
            ("friend_4", "vikram@example.com", "Vikram", "Nair", "user", True),
        ]
        seed_profiles = [
            {
                "id": "fp_1",
                "user_id": "friend_1",
                "bio": "Wedding regular who knows every ritual and keeps the mood easy.",
                "specialties": ["wedding", "sangeet"],
                "skills": ["dancing", "Hindi", "photography"],
                "coordinates": [77.5946, 12.9716],
                "city": "Bengaluru",
                "verification": {"id_verified": True, "background_checked": True, "video_intro": True},
                "response_rate": 96,
                "completion_rate": 98,
                "total_bookings": 14,
                "is_featured": True,
                "packages": [
                    ("pkg_1", "Wedding plus-one", "wedding", "family wedding guest dancing sangeet", 150, 4.8, 22),
                    ("pkg_2", "Social evening", "social", "dinner party conversation", 60, 4.5, 9),
                ],
            },
            {
                "id": "fp_2",
                "user_id": "friend_2",
                "bio": "Marathon runner and patient gym buddy.",
                "specialties": ["running", "gym"],
                "skills": ["strength training", "English"],
                "coordinates": [77.6408, 12.9784],
                "city": "Bengaluru",
                "verification": {"id_verified": True},
                "response_rate": 88,
                "completion_rate": 97,
                "total_bookings": 6,
                "is_featured": False,
                "packages": [
                    ("pkg_3", "Workout partner", "fitness", "gym running motivation", 40, 4.2, 5),
                ],
            },
            {
                "id": "fp_3",
                "user_id": "friend_3",
                "bio": "Travel companion for first-time solo trips.",
                "specialties": ["travel", "museums"],
                "skills": ["navigation", "French"],
                "coordinates": [72.8777, 19.0760],
                "city": "Mumbai",
                "verification": {"id_verified": False},
                "response_rate": 92,
                "completion_rate": 90,
                "total_bookings": 2,
                "is_featured": False,
                "packages": [
                    ("pkg_4", "City explorer", "travel", "city walk museums local food", 80, 3.9, 3),
                    ("pkg_5", "Wedding guest", "wedding", "reception guest", 120, 3.5, 2),
                ],
            },
            {
                "id": "fp_4",
                "user_id": "friend_4",
                "bio": "Calm presence for networking events and conferences.",
                "specialties": ["networking"],
                "skills": ["public speaking", "English"],
                "coordinates": [77.5800, 12.9600],
                "city": "Bengaluru",
                "verification": {"id_verified": True, "background_checked": True},
                "response_rate": 99,
                "completion_rate": 100,
                "total_bookings": 31,
                "is_featured": False,
                "packages": [
                    ("pkg_6", "Conference buddy", "professional", "conference networking event", 110, 4.6, 18),
                ],
            },
        ]

        with self.documents.transaction() as conn:
            for user_id, email, first, last, role, is_friend in seed_users:
                user = User(
                    id=user_id,
                    email=email,
                    first_name=first,
                    last_name=last,
                    role=role,  # type: ignore[arg-type]
                    is_friend=is_friend,
                    is_verified=is_friend,
                    created_at=now,
                    updated_at=now,
                )
                self.documents.insert_if_missing(conn, USERS, _dump(user))

            for seed in seed_profiles:
                packages = [
                    PresencePackage(
                        id=pkg_id,
                        title=title,
                        category=category,
                        description=description,
                        hourly_rate=rate,
                        rating=rating,
                        review_count=reviews,
                        created_at=now,
                    )
                    for pkg_id, title, category, description, rate, rating, reviews in seed["packages"]
                ]
                profile = ProviderProfile(
                    id=seed["id"],
                    user_id=seed["user_id"],
                    bio=seed["bio"],
                    specialties=seed["specialties"],
                    skills=seed["skills"],
                    languages=["English"],
                    location=ProviderLocation(coordinates=seed["coordinates"], city=seed["city"]),
                    presence_packages=packages,
                    response_rate=seed["response_rate"],
                    completion_rate=seed["completion_rate"],
                    total_bookings=seed["total_bookings"],
                    verification_status=VerificationFlags(**seed["verification"]),
                    is_featured=seed["is_featured"],
                    created_at=now,
                    updated_at=now,
                )
                self.documents.insert_if_missing(conn, PROFILES, _dump(profile))


profile_store = ProfileStore(document_store)
