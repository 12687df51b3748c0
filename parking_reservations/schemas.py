from datetime import datetime
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import (BookingPaymentStatus, BookingStatus, PaymentMethod, PaymentStatus,
                     SpotStatus, SpotType, UserRole)

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              from_attributes=True)


# Users and auth
class UserCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class LoginRequest(CamelModel):
    email: str
    password: str


class UserResponse(CamelModel):
    id: int
    name: str
    email: str
    role: UserRole
    phone: Optional[str] = None
    created_at: datetime


class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class RoleUpdate(CamelModel):
    role: UserRole


# Parking spots
class Coordinates(CamelModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class SpotCreate(CamelModel):
    spot_number: str = Field(..., min_length=1, max_length=20)
    location: str = Field(..., min_length=3, max_length=255)
    address: str = Field(..., min_length=1, max_length=255)
    coordinates: Coordinates
    type: SpotType = SpotType.STANDARD
    hourly_rate: float = Field(..., gt=0)
    features: List[str] = Field(default_factory=list)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("spot_number")
    @classmethod
    def normalize_spot_number(cls, value: str) -> str:
        return value.strip().upper()


class SpotUpdate(CamelModel):
    spot_number: Optional[str] = Field(None, min_length=1, max_length=20)
    location: Optional[str] = Field(None, min_length=3, max_length=255)
    address: Optional[str] = Field(None, min_length=1, max_length=255)
    coordinates: Optional[Coordinates] = None
    type: Optional[SpotType] = None
    hourly_rate: Optional[float] = Field(None, gt=0)
    features: Optional[List[str]] = None
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("spot_number", "location", "address", "coordinates", "type", "hourly_rate")
    @classmethod
    def not_null(cls, value, info):
        # may be omitted, but an explicit null would clear a required column
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value

    @field_validator("spot_number")
    @classmethod
    def normalize_spot_number(cls, value: str) -> str:
        return value.strip().upper()


class SpotStatusUpdate(CamelModel):
    status: Literal["maintenance", "auto"]


class SpotResponse(CamelModel):
    id: int
    spot_number: str
    location: str
    address: str
    coordinates: Coordinates
    type: SpotType
    status: SpotStatus
    hourly_rate: float
    features: List[str] = []
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_spot(cls, spot, status: SpotStatus) -> "SpotResponse":
        return cls(
            id=spot.id,
            spot_number=spot.spot_number,
            location=spot.location,
            address=spot.address,
            coordinates=Coordinates(lat=spot.latitude, lon=spot.longitude),
            type=spot.type,
            status=status,
            hourly_rate=spot.hourly_rate,
            features=spot.features or [],
            description=spot.description,
            created_at=spot.created_at,
            updated_at=spot.updated_at,
        )


class NearbySpot(CamelModel):
    spot: SpotResponse
    distance: float


class NearbySpotsResponse(CamelModel):
    center: Coordinates
    radius: float
    count: int
    items: List[NearbySpot]


class AvailabilityResponse(CamelModel):
    spot_id: int
    start_time: datetime
    end_time: datetime
    available: bool


# Bookings
class VehicleInfo(CamelModel):
    license_plate: str = Field(..., min_length=1, max_length=20)
    make: Optional[str] = Field(None, max_length=50)
    model: Optional[str] = Field(None, max_length=50)
    color: Optional[str] = Field(None, max_length=30)

    @field_validator("license_plate")
    @classmethod
    def normalize_plate(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("License plate is required")
        return value


class BookingCreate(CamelModel):
    spot_id: int
    start_time: datetime
    end_time: datetime
    vehicle_info: VehicleInfo
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = Field(None, max_length=500)


class VehicleInfoUpdate(CamelModel):
    license_plate: Optional[str] = Field(None, min_length=1, max_length=20)
    make: Optional[str] = Field(None, max_length=50)
    model: Optional[str] = Field(None, max_length=50)
    color: Optional[str] = Field(None, max_length=30)

    @field_validator("license_plate")
    @classmethod
    def normalize_plate(cls, value: Optional[str]) -> str:
        value = (value or "").strip().upper()
        if not value:
            raise ValueError("License plate cannot be empty")
        return value


class BookingUpdate(CamelModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    vehicle_info: Optional[VehicleInfoUpdate] = None
    notes: Optional[str] = Field(None, max_length=500)


class BookingResponse(CamelModel):
    id: int
    user_id: int
    parking_spot_id: int
    start_time: datetime
    end_time: datetime
    duration: float
    total_cost: float
    status: BookingStatus
    payment_status: BookingPaymentStatus
    payment_method: Optional[PaymentMethod] = None
    vehicle_info: VehicleInfo
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# Payments
class PaymentCreate(CamelModel):
    booking_id: int
    amount: float = Field(..., ge=0)
    method: PaymentMethod
    payment_details: Optional[Dict[str, Any]] = None


class PaymentComplete(CamelModel):
    transaction_id: str = Field(..., min_length=1, max_length=100)
    payment_details: Optional[Dict[str, Any]] = None


class PaymentFail(CamelModel):
    reason: str = Field(..., min_length=1, max_length=500)


class PaymentResponse(CamelModel):
    id: int
    user_id: int
    booking_id: int
    amount: float
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class ReceiptResponse(CamelModel):
    payment: PaymentResponse
    booking: BookingResponse
    spot_number: str
    location: str
    issued_at: datetime
    qr_code: str


# Read API
class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class Page(CamelModel, Generic[T]):
    items: List[T]
    pagination: Pagination


class DashboardStats(CamelModel):
    total_spots: int
    spots_by_status: Dict[str, int]
    bookings_by_status: Dict[str, int]
    active_sessions: int
    revenue: float
    refunded: float
    total_users: Optional[int] = None
