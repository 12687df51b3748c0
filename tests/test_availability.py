import pytest

from parking_reservations import crud, models
from parking_reservations.availability import derive_spot_status, find_conflict, is_available
from parking_reservations.booking_service import BookingService
from parking_reservations.errors import InvalidWindow, SpotNotFound

from .conftest import BASE, at


def test_free_spot_is_available(db, spot):
    assert is_available(db, spot.id, at(0), at(2))


def test_overlapping_active_booking_blocks(db, spot, user, vehicle):
    BookingService(db).create(user, spot.id, at(0), at(2), vehicle, now=BASE)

    assert not is_available(db, spot.id, at(1), at(3))
    assert not is_available(db, spot.id, at(-1), at(0.5))
    assert not is_available(db, spot.id, at(0.5), at(1.5))


def test_boundary_adjacent_windows_do_not_overlap(db, spot, user, vehicle):
    BookingService(db).create(user, spot.id, at(0), at(2), vehicle, now=BASE)

    assert is_available(db, spot.id, at(2), at(4))
    assert is_available(db, spot.id, at(-2), at(0))


def test_cancelled_booking_frees_the_window(db, spot, user, vehicle):
    service = BookingService(db)
    booking = service.create(user, spot.id, at(0), at(2), vehicle, now=BASE)
    service.cancel(booking.id, user)

    assert is_available(db, spot.id, at(0), at(2))
    assert find_conflict(db, spot.id, at(0), at(2)) is None


def test_maintenance_spot_is_never_available(db, spot):
    crud.set_spot_status_mode(db, spot.id, models.SpotStatusMode.FORCED_MAINTENANCE)

    assert not is_available(db, spot.id, at(0), at(2))


def test_window_must_be_ordered(db, spot):
    with pytest.raises(InvalidWindow):
        is_available(db, spot.id, at(2), at(2))
    with pytest.raises(InvalidWindow):
        is_available(db, spot.id, at(3), at(2))


def test_unknown_spot(db):
    with pytest.raises(SpotNotFound):
        is_available(db, 999, at(0), at(1))


def test_find_conflict_can_exclude_a_booking(db, spot, user, vehicle):
    booking = BookingService(db).create(user, spot.id, at(0), at(2), vehicle, now=BASE)

    assert find_conflict(db, spot.id, at(1), at(3)).id == booking.id
    assert find_conflict(db, spot.id, at(1), at(3), exclude_booking_id=booking.id) is None


def test_derived_status_follows_bookings(db, spot, user, vehicle):
    BookingService(db).create(user, spot.id, at(0), at(2), vehicle, now=BASE)

    assert derive_spot_status(db, spot, now=at(-1)) == models.SpotStatus.AVAILABLE
    assert derive_spot_status(db, spot, now=at(0)) == models.SpotStatus.OCCUPIED
    assert derive_spot_status(db, spot, now=at(1.5)) == models.SpotStatus.OCCUPIED
    assert derive_spot_status(db, spot, now=at(2)) == models.SpotStatus.AVAILABLE


def test_maintenance_override_wins_until_cleared(db, spot, user, vehicle):
    BookingService(db).create(user, spot.id, at(0), at(2), vehicle, now=BASE)

    crud.set_spot_status_mode(db, spot.id, models.SpotStatusMode.FORCED_MAINTENANCE)
    assert derive_spot_status(db, spot, now=at(1)) == models.SpotStatus.MAINTENANCE

    crud.set_spot_status_mode(db, spot.id, models.SpotStatusMode.AUTO)
    assert derive_spot_status(db, spot, now=at(1)) == models.SpotStatus.OCCUPIED
