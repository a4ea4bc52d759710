from datetime import datetime
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DataT = TypeVar("DataT")

Category = Literal["wedding", "fitness", "travel", "cultural", "social", "professional", "other"]
Urgency = Literal["flexible", "soon", "urgent"]
BookingStatus = Literal["pending", "confirmed", "in-progress", "completed", "cancelled", "disputed"]
PaymentStatus = Literal["pending", "held", "released", "refunded"]
DisputeStatus = Literal["open", "under-review", "resolved"]
UserRole = Literal["user", "admin", "moderator"]


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------- users


class EmergencyContact(CamelModel):
    name: str
    phone: str
    relationship: str


class User(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    phone: str = ""
    role: UserRole = "user"
    is_friend: bool = False
    rating: float = Field(default=0.0, ge=0, le=5)
    review_count: int = 0
    is_verified: bool = False
    verification_status: Literal["pending", "in-review", "verified", "rejected"] = "pending"
    emergency_contact: Optional[EmergencyContact] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


# ---------------------------------------------------------------- providers


class PresencePackage(CamelModel):
    id: str
    title: str
    category: Category
    description: str
    hourly_rate: float
    min_hours: int = 1
    max_hours: int = 8
    requirements: List[str] = Field(default_factory=list)
    whats_included: List[str] = Field(default_factory=list)
    is_active: bool = True
    rating: float = 0.0
    review_count: int = 0
    created_at: Optional[datetime] = None


class AvailabilityWindow(CamelModel):
    day: Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
    start_time: str
    end_time: str
    is_available: bool = True


class ProviderLocation(CamelModel):
    type: Literal["Point"] = "Point"
    # [longitude, latitude]
    coordinates: List[float] = Field(default_factory=lambda: [0.0, 0.0])
    address: Optional[str] = None
    city: str = ""
    state: Optional[str] = None
    country: Optional[str] = None


class VerificationFlags(CamelModel):
    id_verified: bool = False
    background_checked: bool = False
    video_intro: bool = False
    phone_verified: bool = False
    email_verified: bool = False


class ProviderProfile(CamelModel):
    id: str
    user_id: str
    bio: str
    headline: Optional[str] = None
    specialties: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    location: ProviderLocation = Field(default_factory=ProviderLocation)
    service_radius: float = 25
    presence_packages: List[PresencePackage] = Field(default_factory=list)
    availability: List[AvailabilityWindow] = Field(default_factory=list)
    is_available_now: bool = False
    response_time: int = 60
    response_rate: float = 100
    completion_rate: float = 100
    total_bookings: int = 0
    total_earnings: float = 0.0
    verification_status: VerificationFlags = Field(default_factory=VerificationFlags)
    is_active: bool = True
    is_featured: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def average_rating(self) -> float:
        if not self.presence_packages:
            return 0.0
        return sum(p.rating for p in self.presence_packages) / len(self.presence_packages)

    def find_package(self, package_id: str) -> Optional[PresencePackage]:
        return next((p for p in self.presence_packages if p.id == package_id), None)


# ---------------------------------------------------------------- bookings


class Situation(CamelModel):
    description: str
    category: Category
    context: List[str] = Field(default_factory=list)
    urgency: Urgency = "flexible"
    special_requirements: List[str] = Field(default_factory=list)


class BookingLocation(CamelModel):
    address: str
    coordinates: Optional[List[float]] = None
    notes: Optional[str] = None
    venue_name: Optional[str] = None


class Pricing(CamelModel):
    hourly_rate: float
    total_hours: int
    subtotal: float
    platform_fee: float
    total_amount: float
    friend_earnings: float


class Payment(CamelModel):
    status: PaymentStatus = "pending"
    gateway: Optional[str] = None
    intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[float] = None
    refund_id: Optional[str] = None


class GeoPoint(CamelModel):
    lat: float
    lng: float


class CheckIn(CamelModel):
    id: str
    type: Literal["auto", "manual", "sos"]
    timestamp: datetime
    location: Optional[GeoPoint] = None
    is_emergency: bool = False
    notes: Optional[str] = None


class Message(CamelModel):
    id: str
    sender_id: str
    content: str
    type: Literal["text", "image", "voice", "system"] = "text"
    timestamp: datetime
    is_read: bool = False


class ReviewCategories(CamelModel):
    punctuality: Optional[int] = Field(default=None, ge=1, le=5)
    communication: Optional[int] = Field(default=None, ge=1, le=5)
    professionalism: Optional[int] = Field(default=None, ge=1, le=5)
    overall: int = Field(ge=1, le=5)


class Review(CamelModel):
    reviewer_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    categories: Optional[ReviewCategories] = None
    created_at: datetime


class Cancellation(CamelModel):
    cancelled_by: str
    reason: str
    cancelled_at: datetime
    refund_amount: float


class Dispute(CamelModel):
    disputed_by: str
    reason: str
    description: str = ""
    disputed_at: datetime
    status: DisputeStatus = "open"
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    refund_amount: Optional[float] = None


class Booking(CamelModel):
    id: str
    user_id: str
    friend_id: str
    package_id: str
    status: BookingStatus = "pending"
    situation: Situation
    start_time: datetime
    end_time: datetime
    duration: int
    location: BookingLocation
    pricing: Pricing
    payment: Payment = Field(default_factory=Payment)
    safety_code: str
    check_ins: List[CheckIn] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)
    review: Optional[Review] = None
    friend_review: Optional[Review] = None
    cancellation: Optional[Cancellation] = None
    dispute: Optional[Dispute] = None
    version: int = 0
    created_at: datetime
    updated_at: datetime

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.user_id, self.friend_id)


# ---------------------------------------------------------------- matching


class Match(CamelModel):
    friend: ProviderProfile
    compatibility: int = Field(ge=0, le=100)
    reasons: List[str] = Field(default_factory=list)
    recommended_package: Optional[PresencePackage] = None
    estimated_total: Optional[float] = None


class Budget(CamelModel):
    min: Optional[float] = None
    max: Optional[float] = None


class MatchLocation(CamelModel):
    address: str
    # [longitude, latitude]
    coordinates: Optional[List[float]] = None


class MatchRequest(CamelModel):
    situation: str = Field(min_length=1)
    category: Category
    date: str = Field(min_length=1)
    duration: int = Field(ge=1, le=12)
    location: MatchLocation
    budget: Optional[Budget] = None
    urgency: Urgency = "flexible"
    verified_only: bool = False
    requirements: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------- requests


class RegisterRequest(CamelModel):
    email: str
    first_name: str
    last_name: str
    phone: str = ""


class AuthLoginRequest(CamelModel):
    user_id: str
    password: str


class AuthLoginResponse(CamelModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(CamelModel):
    user_id: str
    role: UserRole


class ProviderProfileCreateRequest(CamelModel):
    bio: str = Field(min_length=1, max_length=2000)
    headline: Optional[str] = Field(default=None, max_length=150)
    specialties: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    city: str
    coordinates: Optional[List[float]] = None
    service_radius: float = Field(default=25, ge=5, le=100)


class PresencePackageCreateRequest(CamelModel):
    title: str = Field(min_length=1)
    category: Category
    description: str = Field(min_length=1)
    hourly_rate: float = Field(ge=20, le=200)
    min_hours: int = Field(default=1, ge=1)
    max_hours: int = Field(default=8, ge=1)
    requirements: List[str] = Field(default_factory=list)
    whats_included: List[str] = Field(default_factory=list)


class PresencePackageUpdateRequest(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    hourly_rate: Optional[float] = Field(default=None, ge=20, le=200)
    min_hours: Optional[int] = Field(default=None, ge=1)
    max_hours: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None


class AvailabilityUpdateRequest(CamelModel):
    availability: List[AvailabilityWindow] = Field(default_factory=list)
    is_available_now: Optional[bool] = None


class BookingCreateRequest(CamelModel):
    friend_id: str = Field(min_length=1)
    package_id: str = Field(min_length=1)
    situation: Situation
    start_time: datetime
    end_time: datetime
    location: BookingLocation


class BookingStatusUpdateRequest(CamelModel):
    status: Literal["pending", "confirmed", "in-progress", "completed", "cancelled"]


class CancelRequest(CamelModel):
    reason: Optional[str] = None


class CheckInRequest(CamelModel):
    type: Literal["auto", "manual", "sos"] = "manual"
    location: Optional[GeoPoint] = None
    is_emergency: bool = False
    notes: Optional[str] = None


class MessageCreateRequest(CamelModel):
    content: str = Field(min_length=1)
    type: Literal["text", "image", "voice"] = "text"


class ReviewRequest(CamelModel):
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    categories: ReviewCategories


class DisputeRequest(CamelModel):
    reason: str = Field(min_length=1)
    description: str = ""


class DisputeResolveRequest(CamelModel):
    resolution: str = Field(min_length=1)
    refund_amount: float = Field(default=0, ge=0)


class VerificationUpdateRequest(CamelModel):
    id_verified: Optional[bool] = None
    background_checked: Optional[bool] = None
    video_intro: Optional[bool] = None
    phone_verified: Optional[bool] = None
    email_verified: Optional[bool] = None


class SosRequest(CamelModel):
    booking_id: str
    location: Optional[GeoPoint] = None
    notes: Optional[str] = None


class LocationShareRequest(CamelModel):
    booking_id: str
    lat: float
    lng: float


class SafetyCodeRequest(CamelModel):
    booking_id: str
    code: str


class PaymentIntentRequest(CamelModel):
    booking_id: str


class PaymentConfirmRequest(CamelModel):
    booking_id: str
    intent_id: str
    transaction_id: str
    signature: str


class PaymentIntent(CamelModel):
    intent_id: str
    amount: int
    currency: str
    gateway: str
    client_key: str


# ---------------------------------------------------------------- responses


class Envelope(BaseModel, Generic[DataT]):
    success: bool = True
    data: DataT


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class PagedEnvelope(BaseModel, Generic[DataT]):
    success: bool = True
    data: List[DataT]
    pagination: Pagination


class MatchMeta(CamelModel):
    total_matches: int
    situation: Dict[str, Any]


class MatchEnvelope(BaseModel):
    success: bool = True
    data: List[Match]
    meta: MatchMeta


class SafetyStatus(CamelModel):
    booking_id: str
    status: BookingStatus
    is_active: bool
    safety_code: str
    check_ins: List[CheckIn]
    last_check_in: Optional[CheckIn] = None
    next_check_in_due: Optional[datetime] = None
    is_overdue: bool = False
    emergency_contact: Optional[EmergencyContact] = None


class CheckInStatus(CamelModel):
    total_check_ins: int
    last_check_in: Optional[CheckIn] = None
    time_since_last_check_in: Optional[float] = None
    is_overdue: bool = False
    check_in_interval: int = 30


class SosAlert(CamelModel):
    alert_id: str
    timestamp: datetime
    emergency_contact: Optional[Dict[str, str]] = None


class Conversation(CamelModel):
    booking_id: str
    other_person_id: str
    status: BookingStatus
    start_time: datetime
    unread_count: int
    last_message: Optional[Message] = None


class EarningsSummary(CamelModel):
    total_earnings: float
    pending_earnings: float
    total_bookings: int
    recent_earnings: List[Dict[str, Any]] = Field(default_factory=list)


class MatchDetails(CamelModel):
    friend: ProviderProfile
    reviews: List[Review]
    stats: Dict[str, float]


class DeviceTokenRegisterRequest(CamelModel):
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(CamelModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["booking", "message", "safety", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None


class Actor(BaseModel):
    """Authenticated caller as seen by the service layer."""

    user_id: str
    role: UserRole = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_staff(self) -> bool:
        return self.role in ("admin", "moderator")
