import enum
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import (JSON, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, Numeric,
                        String, Text)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Exact two-decimal storage; values come back to Python as float.
Money = Numeric(10, 2, asdecimal=False)


def to_cents(amount) -> int:
    """Whole cents, half-up, for exact money comparisons."""
    cents = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP) * 100
    return int(cents)


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class SpotType(str, enum.Enum):
    STANDARD = "standard"
    COMPACT = "compact"
    HANDICAP = "handicap"
    ELECTRIC = "electric"


class SpotStatus(str, enum.Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    MAINTENANCE = "maintenance"


class SpotStatusMode(str, enum.Enum):
    """Stored half of the spot status: either derived from bookings or forced."""
    AUTO = "auto"
    FORCED_MAINTENANCE = "forced_maintenance"


class BookingStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BookingPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    KHALTI = "khalti"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    CASH = "cash"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


def _enum_column(enum_cls, **kwargs):
    return Column(
        Enum(enum_cls, native_enum=False, length=20,
             values_callable=lambda members: [m.value for m in members]),
        **kwargs,
    )


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    role = _enum_column(UserRole, nullable=False, default=UserRole.USER)
    phone = Column(String(30), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    bookings = relationship("Booking", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class ParkingSpot(Base):
    __tablename__ = "parking_spots"

    id = Column(Integer, primary_key=True, index=True)
    spot_number = Column(String(20), unique=True, index=True, nullable=False)
    location = Column(String(255), index=True, nullable=False)
    address = Column(String(255), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    type = _enum_column(SpotType, nullable=False, default=SpotType.STANDARD, index=True)
    status_mode = _enum_column(SpotStatusMode, nullable=False, default=SpotStatusMode.AUTO)
    hourly_rate = Column(Money, nullable=False, index=True)
    features = Column(JSON, default=list)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    bookings = relationship("Booking", back_populates="parking_spot")

    @property
    def in_maintenance(self) -> bool:
        return self.status_mode == SpotStatusMode.FORCED_MAINTENANCE


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_spot_window", "parking_spot_id", "start_time", "end_time"),
        Index("ix_bookings_user_status", "user_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    parking_spot_id = Column(Integer, ForeignKey("parking_spots.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False, index=True)
    duration = Column(Float, nullable=False)
    total_cost = Column(Money, nullable=False)
    status = _enum_column(BookingStatus, nullable=False, default=BookingStatus.ACTIVE, index=True)
    payment_status = _enum_column(BookingPaymentStatus, nullable=False,
                                  default=BookingPaymentStatus.PENDING)
    payment_method = _enum_column(PaymentMethod, nullable=True)

    # Snapshot of the vehicle at booking time, not a live reference.
    license_plate = Column(String(20), nullable=False, index=True)
    vehicle_make = Column(String(50), nullable=True)
    vehicle_model = Column(String(50), nullable=True)
    vehicle_color = Column(String(30), nullable=True)

    notes = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="bookings")
    parking_spot = relationship("ParkingSpot", back_populates="bookings")
    payments = relationship("Payment", back_populates="booking")

    @property
    def vehicle_info(self) -> dict:
        return {
            "license_plate": self.license_plate,
            "make": self.vehicle_make,
            "model": self.vehicle_model,
            "color": self.vehicle_color,
        }


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_booking_status", "booking_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    method = _enum_column(PaymentMethod, nullable=False)
    status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING, index=True)
    transaction_id = Column(String(100), unique=True, nullable=True)
    payment_details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking", back_populates="payments")
    user = relationship("User")
