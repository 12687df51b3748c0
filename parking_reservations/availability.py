import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, exists, false, not_
from sqlalchemy.orm import Session

from . import crud
from .errors import InvalidWindow, SpotNotFound
from .models import (Booking, BookingStatus, ParkingSpot, SpotStatus, SpotStatusMode,
                     to_naive_utc, utcnow)

logger = logging.getLogger(__name__)


def validate_window(start_time: datetime, end_time: datetime):
    if start_time is None or end_time is None:
        raise InvalidWindow("Both start time and end time are required")
    start_time, end_time = to_naive_utc(start_time), to_naive_utc(end_time)
    if start_time >= end_time:
        raise InvalidWindow("End time must be after start time")
    return start_time, end_time


def find_conflict(db: Session, spot_id: int, start_time: datetime, end_time: datetime,
                  exclude_booking_id: Optional[int] = None) -> Optional[Booking]:
    """First active booking on the spot whose [start, end) overlaps the window."""
    query = db.query(Booking).filter(
        Booking.parking_spot_id == spot_id,
        Booking.status == BookingStatus.ACTIVE,
        Booking.start_time < end_time,
        Booking.end_time > start_time,
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.order_by(Booking.start_time).first()


def check_spot(db: Session, spot: ParkingSpot, start_time: datetime, end_time: datetime) -> bool:
    """Availability of an already loaded (and, when booking, locked) spot."""
    if spot.in_maintenance:
        return False
    conflict = find_conflict(db, spot.id, start_time, end_time)
    if conflict is not None:
        logger.debug(f"Spot {spot.id} window {start_time} - {end_time} overlaps booking {conflict.id}")
        return False
    return True


def is_available(db: Session, spot_id: int, start_time: datetime, end_time: datetime) -> bool:
    start_time, end_time = validate_window(start_time, end_time)
    spot = crud.get_spot(db, spot_id)
    if not spot:
        raise SpotNotFound(spot_id)
    return check_spot(db, spot, start_time, end_time)


def _covering_booking(spot_id_column, now: datetime):
    return exists().where(
        Booking.parking_spot_id == spot_id_column,
        Booking.status == BookingStatus.ACTIVE,
        Booking.start_time <= now,
        Booking.end_time > now,
    )


def derive_spot_status(db: Session, spot: ParkingSpot, now: Optional[datetime] = None) -> SpotStatus:
    """Maintenance override wins; otherwise occupied while an active booking covers now."""
    if spot.in_maintenance:
        return SpotStatus.MAINTENANCE
    now = to_naive_utc(now) if now else utcnow()
    covered = db.query(_covering_booking(spot.id, now)).scalar()
    return SpotStatus.OCCUPIED if covered else SpotStatus.AVAILABLE


def occupied_spot_ids(db: Session, now: Optional[datetime] = None) -> set:
    now = to_naive_utc(now) if now else utcnow()
    rows = db.query(Booking.parking_spot_id).filter(
        Booking.status == BookingStatus.ACTIVE,
        Booking.start_time <= now,
        Booking.end_time > now,
    ).distinct().all()
    return {row[0] for row in rows}


def spot_status_clause(status: SpotStatus, now: datetime):
    """SQL criterion matching spots whose derived status equals ``status``."""
    forced = ParkingSpot.status_mode == SpotStatusMode.FORCED_MAINTENANCE
    covered = _covering_booking(ParkingSpot.id, now)
    if status == SpotStatus.MAINTENANCE:
        return forced
    if status == SpotStatus.OCCUPIED:
        return and_(not_(forced), covered)
    if status == SpotStatus.AVAILABLE:
        return and_(not_(forced), not_(covered))
    # reserved is never derived
    return false()
