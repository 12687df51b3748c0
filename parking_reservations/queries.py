"""Read side: filtering, sorting and pagination for bookings, spots and payments.

Nothing here mutates state. Filter values are checked against the enum
domains and sort fields against a whitelist before a query is built.
"""
import math
from datetime import datetime
from typing import Optional

from geopy.distance import geodesic
from sqlalchemy import asc, desc, func
from sqlalchemy.orm import Query, Session

from .availability import occupied_spot_ids, spot_status_clause
from .config import settings
from .errors import InvalidFilter, InvalidPagination, SpotNotFound
from .models import (Booking, BookingStatus, ParkingSpot, Payment, PaymentStatus, SpotStatus,
                     SpotStatusMode, SpotType, User, to_naive_utc, utcnow)
from .schemas import SpotResponse


BOOKING_SORT_FIELDS = {
    "createdAt": Booking.created_at,
    "startTime": Booking.start_time,
    "endTime": Booking.end_time,
    "totalCost": Booking.total_cost,
    "status": Booking.status,
}

SPOT_SORT_FIELDS = {
    "createdAt": ParkingSpot.created_at,
    "spotNumber": ParkingSpot.spot_number,
    "hourlyRate": ParkingSpot.hourly_rate,
    "location": ParkingSpot.location,
    "type": ParkingSpot.type,
}

PAYMENT_SORT_FIELDS = {
    "createdAt": Payment.created_at,
    "amount": Payment.amount,
    "status": Payment.status,
}

METRES_PER_DEGREE = 111320.0


def parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidFilter(f"Invalid {field} '{value}'; expected one of: {allowed}")


def validate_pagination(page: Optional[int], limit: Optional[int]):
    page = 1 if page is None else page
    limit = settings.default_page_size if limit is None else limit
    if page < 1:
        raise InvalidPagination("page must be at least 1")
    if limit < 1 or limit > settings.max_page_size:
        raise InvalidPagination(f"limit must be between 1 and {settings.max_page_size}")
    return page, limit


def apply_sort(query: Query, fields: dict, sort_by: Optional[str], sort_order: Optional[str],
               tiebreaker) -> Query:
    sort_by = sort_by or "createdAt"
    sort_order = sort_order or "desc"
    if sort_by not in fields:
        raise InvalidFilter(f"Cannot sort by '{sort_by}'; allowed: {', '.join(fields)}")
    if sort_order not in ("asc", "desc"):
        raise InvalidFilter("sortOrder must be 'asc' or 'desc'")
    direction = asc if sort_order == "asc" else desc
    return query.order_by(direction(fields[sort_by]), direction(tiebreaker))


def paginate(query: Query, page: int, limit: int) -> dict:
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "items": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }


def list_bookings(db: Session, actor: User, status: Optional[str] = None,
                  page: Optional[int] = None, limit: Optional[int] = None,
                  sort_by: Optional[str] = None, sort_order: Optional[str] = None) -> dict:
    """Admins see every booking, everyone else only their own."""
    status = parse_enum(BookingStatus, status, "status")
    page, limit = validate_pagination(page, limit)

    query = db.query(Booking)
    if not actor.is_admin:
        query = query.filter(Booking.user_id == actor.id)
    if status:
        query = query.filter(Booking.status == status)
    query = apply_sort(query, BOOKING_SORT_FIELDS, sort_by, sort_order, Booking.id)
    return paginate(query, page, limit)


def list_spot_bookings(db: Session, spot_id: int, status: Optional[str] = None,
                       page: Optional[int] = None, limit: Optional[int] = None,
                       sort_by: Optional[str] = None, sort_order: Optional[str] = None) -> dict:
    """Every booking on one spot, newest start first unless sorted otherwise."""
    status = parse_enum(BookingStatus, status, "status")
    page, limit = validate_pagination(page, limit)
    if not db.query(ParkingSpot.id).filter(ParkingSpot.id == spot_id).first():
        raise SpotNotFound(spot_id)

    query = db.query(Booking).filter(Booking.parking_spot_id == spot_id)
    if status:
        query = query.filter(Booking.status == status)
    query = apply_sort(query, BOOKING_SORT_FIELDS, sort_by or "startTime", sort_order,
                       Booking.id)
    return paginate(query, page, limit)


def nearby_spots(db: Session, lat: float, lon: float, radius: Optional[float] = None,
                 limit: Optional[int] = None, now: Optional[datetime] = None) -> dict:
    """Available spots within ``radius`` metres of (lat, lon), closest first.

    A bounding box narrows the rows in SQL; the geodesic distance decides.
    """
    now = to_naive_utc(now) if now else utcnow()
    radius = settings.nearby_default_radius if radius is None else radius
    _, limit = validate_pagination(1, limit)

    if not -90 <= lat <= 90 or not -180 <= lon <= 180:
        raise InvalidFilter("Invalid coordinates provided")
    if radius <= 0 or radius > settings.nearby_max_radius:
        raise InvalidFilter(f"radius must be between 0 and {settings.nearby_max_radius:g} metres")

    lat_span = radius / METRES_PER_DEGREE
    lon_span = radius / (METRES_PER_DEGREE * max(math.cos(math.radians(lat)), 0.01))
    candidates = db.query(ParkingSpot).filter(
        spot_status_clause(SpotStatus.AVAILABLE, now),
        ParkingSpot.latitude.between(lat - lat_span, lat + lat_span),
        ParkingSpot.longitude.between(lon - lon_span, lon + lon_span),
    ).all()

    found = []
    for spot in candidates:
        distance = geodesic((lat, lon), (spot.latitude, spot.longitude)).meters
        if distance <= radius:
            found.append((distance, spot))
    found.sort(key=lambda item: (item[0], item[1].id))

    items = [{"spot": SpotResponse.from_spot(spot, SpotStatus.AVAILABLE),
              "distance": round(distance, 1)}
             for distance, spot in found[:limit]]
    return {"center": {"lat": lat, "lon": lon}, "radius": radius, "count": len(items),
            "items": items}


def list_spots(db: Session, type: Optional[str] = None, status: Optional[str] = None,
               min_rate: Optional[float] = None, max_rate: Optional[float] = None,
               location: Optional[str] = None, page: Optional[int] = None,
               limit: Optional[int] = None, sort_by: Optional[str] = None,
               sort_order: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    """Spots with their status derived as of ``now``."""
    now = to_naive_utc(now) if now else utcnow()
    spot_type = parse_enum(SpotType, type, "type")
    status = parse_enum(SpotStatus, status, "status")
    page, limit = validate_pagination(page, limit)

    if min_rate is not None and min_rate < 0:
        raise InvalidFilter("minRate cannot be negative")
    if max_rate is not None and max_rate < 0:
        raise InvalidFilter("maxRate cannot be negative")
    if min_rate is not None and max_rate is not None and min_rate > max_rate:
        raise InvalidFilter("minRate cannot be greater than maxRate")

    query = db.query(ParkingSpot)
    if spot_type:
        query = query.filter(ParkingSpot.type == spot_type)
    if status:
        query = query.filter(spot_status_clause(status, now))
    if min_rate is not None:
        query = query.filter(ParkingSpot.hourly_rate >= min_rate)
    if max_rate is not None:
        query = query.filter(ParkingSpot.hourly_rate <= max_rate)
    if location:
        query = query.filter(ParkingSpot.location.ilike(f"%{location}%"))
    query = apply_sort(query, SPOT_SORT_FIELDS, sort_by, sort_order, ParkingSpot.id)

    result = paginate(query, page, limit)
    occupied = occupied_spot_ids(db, now)
    result["items"] = [SpotResponse.from_spot(spot, _status_of(spot, occupied))
                       for spot in result["items"]]
    return result


def _status_of(spot: ParkingSpot, occupied: set) -> SpotStatus:
    if spot.in_maintenance:
        return SpotStatus.MAINTENANCE
    return SpotStatus.OCCUPIED if spot.id in occupied else SpotStatus.AVAILABLE


def list_payments(db: Session, actor: User, status: Optional[str] = None,
                  page: Optional[int] = None, limit: Optional[int] = None,
                  sort_by: Optional[str] = None, sort_order: Optional[str] = None) -> dict:
    status = parse_enum(PaymentStatus, status, "status")
    page, limit = validate_pagination(page, limit)

    query = db.query(Payment)
    if not actor.is_admin:
        query = query.filter(Payment.user_id == actor.id)
    if status:
        query = query.filter(Payment.status == status)
    query = apply_sort(query, PAYMENT_SORT_FIELDS, sort_by, sort_order, Payment.id)
    return paginate(query, page, limit)


def dashboard_stats(db: Session, actor: User, now: Optional[datetime] = None) -> dict:
    """Spot, booking and revenue figures; scoped to the actor unless admin."""
    now = to_naive_utc(now) if now else utcnow()

    spots = db.query(ParkingSpot.id, ParkingSpot.status_mode).all()
    occupied = occupied_spot_ids(db, now)
    spots_by_status = {s.value: 0 for s in SpotStatus}
    for spot_id, mode in spots:
        if mode == SpotStatusMode.FORCED_MAINTENANCE:
            spots_by_status[SpotStatus.MAINTENANCE.value] += 1
        elif spot_id in occupied:
            spots_by_status[SpotStatus.OCCUPIED.value] += 1
        else:
            spots_by_status[SpotStatus.AVAILABLE.value] += 1

    bookings = db.query(Booking.status, func.count(Booking.id))
    active_sessions = db.query(Booking).filter(
        Booking.status == BookingStatus.ACTIVE,
        Booking.start_time <= now,
        Booking.end_time > now,
    )
    payments = db.query(Payment.status, func.coalesce(func.sum(Payment.amount), 0.0))
    if not actor.is_admin:
        bookings = bookings.filter(Booking.user_id == actor.id)
        active_sessions = active_sessions.filter(Booking.user_id == actor.id)
        payments = payments.filter(Payment.user_id == actor.id)

    bookings_by_status = {s.value: 0 for s in BookingStatus}
    for status, count in bookings.group_by(Booking.status).all():
        bookings_by_status[status.value] = count

    totals = {status: float(amount) for status, amount in payments.group_by(Payment.status).all()}

    return {
        "total_spots": len(spots),
        "spots_by_status": spots_by_status,
        "bookings_by_status": bookings_by_status,
        "active_sessions": active_sessions.count(),
        "revenue": round(totals.get(PaymentStatus.COMPLETED, 0.0), 2),
        "refunded": round(totals.get(PaymentStatus.REFUNDED, 0.0), 2),
        "total_users": db.query(User).count() if actor.is_admin else None,
    }
