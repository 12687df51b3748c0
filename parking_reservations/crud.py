from sqlalchemy.orm import Session
from typing import Optional
from . import models, schemas

# Users
def get_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()

def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email.strip().lower()).first()

def get_admin(db: Session) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.role == models.UserRole.ADMIN).first()

def create_user(db: Session, user: schemas.UserCreate, hashed_password: str,
                role: models.UserRole = models.UserRole.USER) -> models.User:
    db_user = models.User(
        name=user.name,
        email=user.email,
        phone=user.phone,
        hashed_password=hashed_password,
        role=role,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user

def update_user_role(db: Session, user_id: int, role: models.UserRole) -> Optional[models.User]:
    db_user = get_user(db, user_id)
    if db_user:
        db_user.role = role
        db.commit()
        db.refresh(db_user)
    return db_user

# Parking spots
def get_spot(db: Session, spot_id: int) -> Optional[models.ParkingSpot]:
    return db.query(models.ParkingSpot).filter(models.ParkingSpot.id == spot_id).first()

def get_spot_by_number(db: Session, spot_number: str) -> Optional[models.ParkingSpot]:
    return db.query(models.ParkingSpot).filter(
        models.ParkingSpot.spot_number == spot_number.strip().upper()
    ).first()

def create_spot(db: Session, spot: schemas.SpotCreate) -> models.ParkingSpot:
    data = spot.model_dump(exclude={"coordinates"})
    db_spot = models.ParkingSpot(
        **data,
        latitude=spot.coordinates.lat,
        longitude=spot.coordinates.lon,
    )
    db.add(db_spot)
    db.commit()
    db.refresh(db_spot)
    return db_spot

def update_spot(db: Session, spot_id: int,
                spot_update: schemas.SpotUpdate) -> Optional[models.ParkingSpot]:
    db_spot = get_spot(db, spot_id)
    if db_spot:
        update_data = spot_update.model_dump(exclude_unset=True)
        coordinates = update_data.pop("coordinates", None)
        if coordinates is not None:
            db_spot.latitude = coordinates["lat"]
            db_spot.longitude = coordinates["lon"]
        for key, value in update_data.items():
            setattr(db_spot, key, value)
        db.commit()
        db.refresh(db_spot)
    return db_spot

def set_spot_status_mode(db: Session, spot_id: int,
                         mode: models.SpotStatusMode) -> Optional[models.ParkingSpot]:
    db_spot = get_spot(db, spot_id)
    if db_spot:
        db_spot.status_mode = mode
        db.commit()
        db.refresh(db_spot)
    return db_spot

def delete_spot(db: Session, spot_id: int) -> bool:
    db_spot = get_spot(db, spot_id)
    if not db_spot:
        return False
    db.delete(db_spot)
    db.commit()
    return True

# Bookings and payments
def get_booking(db: Session, booking_id: int) -> Optional[models.Booking]:
    return db.query(models.Booking).filter(models.Booking.id == booking_id).first()

def get_payment(db: Session, payment_id: int) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.id == payment_id).first()

def count_bookings_for_spot(db: Session, spot_id: int) -> int:
    return db.query(models.Booking).filter(models.Booking.parking_spot_id == spot_id).count()
