import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .availability import check_spot, find_conflict, validate_window
from .config import settings
from .errors import (AuthzError, BookingNotFound, InvalidTransitionError, InvalidWindow,
                     ParkingError, SpotNotFound, SpotUnavailable)
from .models import (Booking, BookingPaymentStatus, BookingStatus, ParkingSpot, PaymentMethod,
                     User, to_naive_utc, utcnow)
from .schemas import VehicleInfo

logger = logging.getLogger(__name__)


def ensure_owner_or_admin(booking: Booking, actor: User):
    if not actor.is_admin and booking.user_id != actor.id:
        raise AuthzError("You are not allowed to access this booking")


class BookingService:
    """Owns every booking status transition.

    Spot status is derived from active bookings at read time, so nothing here
    writes to ``parking_spots`` beyond taking its row lock.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, user: User, spot_id: int, start_time: datetime, end_time: datetime,
               vehicle_info: VehicleInfo, payment_method: Optional[PaymentMethod] = None,
               notes: Optional[str] = None, now: Optional[datetime] = None) -> Booking:
        """Book a spot for [start_time, end_time).

        The spot row is locked before the overlap check and released by the
        commit that inserts the booking, so two concurrent requests for
        overlapping windows cannot both succeed.
        """
        now = to_naive_utc(now) if now else utcnow()
        start_time, end_time, duration = self._checked_window(start_time, end_time, now)

        try:
            spot = self._lock_spot(spot_id)
            if not check_spot(self.db, spot, start_time, end_time):
                raise SpotUnavailable()

            booking = Booking(
                user_id=user.id,
                parking_spot_id=spot.id,
                start_time=start_time,
                end_time=end_time,
                duration=round(duration, 4),
                # frozen at creation; later rate changes never touch it
                total_cost=round(duration * spot.hourly_rate, 2),
                status=BookingStatus.ACTIVE,
                payment_status=BookingPaymentStatus.PENDING,
                payment_method=payment_method,
                license_plate=vehicle_info.license_plate,
                vehicle_make=vehicle_info.make,
                vehicle_model=vehicle_info.model,
                vehicle_color=vehicle_info.color,
                notes=notes,
            )
            self.db.add(booking)
            self.db.commit()
        except (ParkingError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.warning(f"Booking rejected for spot {spot_id} by user {user.id}: {e}")
            raise

        self.db.refresh(booking)
        logger.info(f"Booking {booking.id} created: spot {booking.parking_spot_id}, "
                    f"{booking.start_time} - {booking.end_time}, total {booking.total_cost:.2f}")
        return booking

    def _checked_window(self, start_time: datetime, end_time: datetime, now: datetime,
                        check_start: bool = True):
        start_time, end_time = validate_window(start_time, end_time)

        if check_start and start_time < now - timedelta(minutes=settings.booking_grace_minutes):
            raise InvalidWindow("Start time must not be in the past")

        duration = (end_time - start_time).total_seconds() / 3600
        if duration < settings.min_booking_hours:
            raise InvalidWindow(f"Minimum booking duration is {settings.min_booking_hours} hours")
        if duration > settings.max_booking_hours:
            raise InvalidWindow(f"Maximum booking duration is {settings.max_booking_hours} hours")
        return start_time, end_time, duration

    def _lock_spot(self, spot_id: int) -> ParkingSpot:
        spot = self.db.query(ParkingSpot).filter(
            ParkingSpot.id == spot_id
        ).with_for_update().first()
        if not spot:
            raise SpotNotFound(spot_id)
        if spot.in_maintenance:
            raise SpotUnavailable(f"Parking spot {spot.spot_number} is under maintenance")
        return spot

    def update(self, booking_id: int, actor: User, start_time: Optional[datetime] = None,
               end_time: Optional[datetime] = None, vehicle_info: Optional[dict] = None,
               notes: Optional[str] = None, now: Optional[datetime] = None) -> Booking:
        """Reschedule an active booking or edit its vehicle and notes.

        A new window goes through the same checks as ``create`` under the
        same spot lock, ignoring the booking itself when looking for
        overlaps. The cost is re-priced at the rate the booking was made
        at, never the spot's current rate. Paid bookings keep their window.
        """
        now = to_naive_utc(now) if now else utcnow()
        booking = self.get_for_actor(booking_id, actor)
        reschedule = start_time is not None or end_time is not None

        try:
            if reschedule:
                new_start, new_end, duration = self._checked_window(
                    start_time if start_time is not None else booking.start_time,
                    end_time if end_time is not None else booking.end_time,
                    now,
                    check_start=start_time is not None,
                )
                self._lock_spot(booking.parking_spot_id)

            booking = self.db.query(Booking).filter(
                Booking.id == booking_id
            ).with_for_update().populate_existing().one()
            if booking.status != BookingStatus.ACTIVE:
                raise InvalidTransitionError(f"Cannot update a booking that is {booking.status.value}")

            if reschedule:
                if booking.payment_status in (BookingPaymentStatus.PAID,
                                              BookingPaymentStatus.REFUNDED):
                    raise InvalidTransitionError(
                        f"Booking {booking_id} is {booking.payment_status.value}; it cannot be rescheduled",
                        code="BookingPaid")
                conflict = find_conflict(self.db, booking.parking_spot_id, new_start, new_end,
                                         exclude_booking_id=booking.id)
                if conflict is not None:
                    raise SpotUnavailable("Updated time conflicts with another booking")

                booked_rate = booking.total_cost / booking.duration
                booking.start_time = new_start
                booking.end_time = new_end
                booking.duration = round(duration, 4)
                booking.total_cost = round(duration * booked_rate, 2)

            if vehicle_info:
                for key, column in (("license_plate", "license_plate"), ("make", "vehicle_make"),
                                    ("model", "vehicle_model"), ("color", "vehicle_color")):
                    if key in vehicle_info:
                        setattr(booking, column, vehicle_info[key])
            if notes is not None:
                booking.notes = notes
            self.db.commit()
        except (ParkingError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.warning(f"Booking {booking_id} update rejected for user {actor.id}: {e}")
            raise

        self.db.refresh(booking)
        logger.info(f"Booking {booking_id} updated by user {actor.id}: "
                    f"{booking.start_time} - {booking.end_time}, total {booking.total_cost:.2f}")
        return booking

    def get_for_actor(self, booking_id: int, actor: User) -> Booking:
        booking = crud.get_booking(self.db, booking_id)
        if not booking:
            raise BookingNotFound(booking_id)
        ensure_owner_or_admin(booking, actor)
        return booking

    def cancel(self, booking_id: int, actor: User) -> Booking:
        """Cancel an active booking. A paid booking is not refunded here."""
        return self._finish(booking_id, actor, BookingStatus.CANCELLED, "cancel")

    def complete(self, booking_id: int, actor: User) -> Booking:
        """Check out; allowed any time while the booking is active."""
        return self._finish(booking_id, actor, BookingStatus.COMPLETED, "complete")

    def _finish(self, booking_id: int, actor: User, target: BookingStatus, verb: str) -> Booking:
        booking = self.get_for_actor(booking_id, actor)

        try:
            updated = self.db.query(Booking).filter(
                Booking.id == booking_id,
                Booking.status == BookingStatus.ACTIVE,
            ).update({Booking.status: target, Booking.updated_at: utcnow()},
                     synchronize_session=False)
            if not updated:
                self.db.rollback()
                current = booking.status.value
                logger.warning(f"Refused to {verb} booking {booking_id}: status is {current}")
                raise InvalidTransitionError(f"Cannot {verb} a booking that is {current}")
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        logger.info(f"Booking {booking_id} {target.value} by user {actor.id}")
        return booking

    def expire_due(self, now: Optional[datetime] = None) -> int:
        """Move every active booking whose end time has passed to expired.

        One conditional UPDATE, so overlapping runs simply find nothing left
        to change.
        """
        now = to_naive_utc(now) if now else utcnow()
        try:
            expired = self.db.query(Booking).filter(
                Booking.status == BookingStatus.ACTIVE,
                Booking.end_time < now,
            ).update({Booking.status: BookingStatus.EXPIRED, Booking.updated_at: now},
                     synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        if expired:
            logger.info(f"Expired {expired} booking(s) ending before {now}")
        return expired
