from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    client = "client"
    provider = "provider"


class BookingStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"


class ProviderStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    suspended = "suspended"


class PriceType(str, Enum):
    hourly = "hourly"
    fixed = "fixed"
    daily = "daily"


class RejectionReason(str, Enum):
    outside_availability = "outside_availability"
    slot_conflict = "slot_conflict"
    past_date = "past_date"
    provider_unavailable_that_day = "provider_unavailable_that_day"


class LifecycleEventKind(str, Enum):
    booking_request = "booking_request"
    booking_confirmed = "booking_confirmed"
    booking_cancelled = "booking_cancelled"
    booking_completed = "booking_completed"


class Profile(BaseModel):
    id: str
    role: Role
    first_name: str
    last_name: str = ""
    phone_number: Optional[str] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: str

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ServiceProvider(BaseModel):
    id: str
    profile_id: str
    business_name: str
    description: str = ""
    skills: list[str] = Field(default_factory=list)
    hourly_rate: Optional[float] = None
    service_radius_km: Optional[int] = None
    experience_years: Optional[int] = None
    verification_status: ProviderStatus = ProviderStatus.pending
    average_rating: float = 0.0
    total_reviews: int = 0
    created_at: str


class ServiceCategory(BaseModel):
    id: str
    name: str
    description: str = ""
    icon_name: Optional[str] = None


class AvailabilityRule(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    is_available: bool = True


class ServiceListing(BaseModel):
    id: str
    provider_id: str
    category_id: str
    title: str
    description: str
    price: Optional[float] = None
    price_type: PriceType = PriceType.fixed
    duration_minutes: Optional[int] = None
    location: Optional[str] = None
    is_active: bool = True
    created_at: str


class Booking(BaseModel):
    id: str
    client_id: str
    provider_id: str
    listing_id: str
    scheduled_date: str
    scheduled_time: str
    duration_minutes: int = 60
    total_price: Optional[float] = None
    client_notes: str = ""
    provider_notes: str = ""
    status: BookingStatus = BookingStatus.pending
    version: int = 1
    created_at: str
    updated_at: str


class BookingStatusChange(BaseModel):
    booking_id: str
    actor_id: str
    from_status: Optional[BookingStatus] = None
    to_status: BookingStatus
    note: str = ""
    created_at: str


class Review(BaseModel):
    id: str
    booking_id: str
    provider_id: str
    reviewer_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    created_at: str


class Message(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    booking_id: Optional[str] = None
    content: str
    created_at: str


class ConversationSummary(BaseModel):
    other_id: str
    other_name: str
    last_message: Message


class AvailabilityVerdict(BaseModel):
    available: bool
    reason: Optional[RejectionReason] = None


class BookingLifecycleEvent(BaseModel):
    kind: LifecycleEventKind
    booking_id: str
    client_id: str
    provider_id: str
    actor_id: str
    occurred_at: str


# Requests


class ProfileCreateRequest(BaseModel):
    role: Role
    first_name: str
    last_name: str = ""
    phone_number: Optional[str] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    actor_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = None
    role: Optional[Role] = None


class ProviderCreateRequest(BaseModel):
    actor_id: str
    business_name: str
    description: str = ""
    skills: list[str] = Field(default_factory=list)
    hourly_rate: Optional[float] = None
    service_radius_km: Optional[int] = None
    experience_years: Optional[int] = None


class ProviderUpdateRequest(BaseModel):
    actor_id: str
    business_name: Optional[str] = None
    description: Optional[str] = None
    skills: Optional[list[str]] = None
    hourly_rate: Optional[float] = None
    service_radius_km: Optional[int] = None
    experience_years: Optional[int] = None


class ProviderVerificationRequest(BaseModel):
    status: ProviderStatus


class AvailabilityReplaceRequest(BaseModel):
    actor_id: str
    rules: list[AvailabilityRule]


class ListingCreateRequest(BaseModel):
    actor_id: str
    category_id: str
    title: str
    description: str
    price: Optional[float] = None
    price_type: PriceType = PriceType.fixed
    duration_minutes: Optional[int] = None
    location: Optional[str] = None


class ListingUpdateRequest(BaseModel):
    actor_id: str
    category_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    price_type: Optional[PriceType] = None
    duration_minutes: Optional[int] = None
    location: Optional[str] = None


class ListingActiveRequest(BaseModel):
    actor_id: str
    is_active: bool


class BookingCreateRequest(BaseModel):
    actor_id: str
    listing_id: str
    scheduled_date: str
    scheduled_time: str
    client_notes: str = ""


class BookingTransitionRequest(BaseModel):
    actor_id: str
    status: BookingStatus
    provider_notes: Optional[str] = None


class ReviewCreateRequest(BaseModel):
    actor_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class MessageCreateRequest(BaseModel):
    actor_id: str
    receiver_id: str
    content: str
    booking_id: Optional[str] = None


# Responses


class BookingTransitionResponse(BaseModel):
    booking: Booking
    changed: bool


class ProviderDetails(BaseModel):
    provider: ServiceProvider
    profile: Profile
    availability: list[AvailabilityRule]
    reviews: list[Review]


class AuthLoginRequest(BaseModel):
    profile_id: str
    password: str = "marketplace-demo"


class AuthSignupResponse(BaseModel):
    profile: Profile
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_at: str


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    profile_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    profile_id: str


class DeviceTokenRegisterRequest(BaseModel):
    profile_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "web"


class NotificationRecord(BaseModel):
    id: str
    profile_id: str
    title: str
    body: str
    category: Literal["booking", "message", "review", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
