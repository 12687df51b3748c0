from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional
import asyncio
import logging
import os

from . import crud, models, queries, schemas
from .availability import derive_spot_status, is_available
from .booking_service import BookingService
from .config import settings
from .database import Base, SessionLocal, engine, get_db
from .errors import ConflictError, DuplicateRecord, ParkingError, SpotNotFound, UserNotFound
from .payment_service import PaymentReconciler
from .security import (authenticate, create_access_token, get_current_user, hash_password,
                       require_admin)

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Parking Reservations API", version="1.0.0")

expiry_worker_active = False
expiry_task: Optional[asyncio.Task] = None


@app.on_event("startup")
async def startup_event():
    """Create tables, make sure an admin exists and start the expiry sweep"""
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        ensure_admin(db)
    finally:
        db.close()

    global expiry_worker_active, expiry_task
    if settings.expiry_worker_enabled:
        expiry_worker_active = True
        expiry_task = asyncio.create_task(start_expiry_worker())


@app.on_event("shutdown")
async def shutdown_event():
    global expiry_worker_active
    expiry_worker_active = False
    if expiry_task is not None:
        expiry_task.cancel()


def ensure_admin(db: Session) -> models.User:
    admin = crud.get_admin(db)
    if admin:
        return admin
    admin = crud.create_user(
        db,
        schemas.UserCreate(name=settings.admin_name, email=settings.admin_email,
                           password=settings.admin_password),
        hashed_password=hash_password(settings.admin_password),
        role=models.UserRole.ADMIN,
    )
    logger.info(f"Created bootstrap admin {admin.email}")
    return admin


def sweep_expired_bookings() -> int:
    db = SessionLocal()
    try:
        return BookingService(db).expire_due()
    finally:
        db.close()


async def run_expiry_sweep() -> Optional[int]:
    # a failed sweep must not end the worker loop
    try:
        return await asyncio.to_thread(sweep_expired_bookings)
    except Exception:
        logger.exception("Expiry sweep failed")
        return None


async def start_expiry_worker():
    """Periodically expire bookings whose end time has passed"""
    logger.info(f"Expiry worker started, interval {settings.expiry_interval_seconds}s")
    while expiry_worker_active:
        await run_expiry_sweep()
        await asyncio.sleep(settings.expiry_interval_seconds)


# ==================== ERROR HANDLING ====================

@app.exception_handler(ParkingError)
async def parking_error_handler(request: Request, exc: ParkingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": "ValidationError",
            "code": "InvalidRequest",
            "message": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "InternalError", "code": "InternalError",
                 "message": "Something went wrong on the server"},
    )


# ==================== AUTH ====================

@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/auth/register", response_model=schemas.UserResponse, status_code=201)
def register(user: schemas.UserCreate, db: Session = Depends(get_db)):
    """Register a regular user"""
    if crud.get_user_by_email(db, user.email):
        raise DuplicateRecord(f"A user with email {user.email} already exists")
    db_user = crud.create_user(db, user, hashed_password=hash_password(user.password))
    logger.info(f"Registered user {db_user.id} ({db_user.email})")
    return db_user


@app.post("/auth/login", response_model=schemas.TokenResponse)
def login(credentials: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = authenticate(db, credentials.email, credentials.password)
    return {"access_token": create_access_token(user), "token_type": "bearer", "user": user}


@app.get("/auth/me", response_model=schemas.UserResponse)
def me(current_user: models.User = Depends(get_current_user)):
    return current_user


@app.patch("/users/{user_id}/role", response_model=schemas.UserResponse)
def update_role(user_id: int, payload: schemas.RoleUpdate, db: Session = Depends(get_db),
                admin: models.User = Depends(require_admin)):
    """Change a user's role (admin only)"""
    user = crud.update_user_role(db, user_id, payload.role)
    if not user:
        raise UserNotFound(user_id)
    logger.info(f"User {user_id} role set to {payload.role.value} by admin {admin.id}")
    return user


# ==================== PARKING SPOTS ====================

@app.get("/spots", response_model=schemas.Page[schemas.SpotResponse])
def list_spots(type: Optional[str] = None,
               status: Optional[str] = None,
               min_rate: Optional[float] = Query(None, alias="minRate"),
               max_rate: Optional[float] = Query(None, alias="maxRate"),
               location: Optional[str] = None,
               page: Optional[int] = None,
               limit: Optional[int] = None,
               sort_by: Optional[str] = Query(None, alias="sortBy"),
               sort_order: Optional[str] = Query(None, alias="sortOrder"),
               db: Session = Depends(get_db)):
    """List parking spots with their derived status"""
    return queries.list_spots(db, type=type, status=status, min_rate=min_rate, max_rate=max_rate,
                              location=location, page=page, limit=limit, sort_by=sort_by,
                              sort_order=sort_order)


@app.get("/spots/nearby", response_model=schemas.NearbySpotsResponse)
def nearby_spots(lat: float, lon: float,
                 radius: Optional[float] = None,
                 limit: Optional[int] = None,
                 db: Session = Depends(get_db)):
    """Available spots within radius metres, closest first"""
    return queries.nearby_spots(db, lat, lon, radius=radius, limit=limit)


@app.get("/spots/{spot_id}", response_model=schemas.SpotResponse)
def get_spot(spot_id: int, db: Session = Depends(get_db)):
    spot = crud.get_spot(db, spot_id)
    if not spot:
        raise SpotNotFound(spot_id)
    return schemas.SpotResponse.from_spot(spot, derive_spot_status(db, spot))


@app.get("/spots/{spot_id}/availability", response_model=schemas.AvailabilityResponse)
def check_availability(spot_id: int,
                       start_time: datetime = Query(..., alias="startTime"),
                       end_time: datetime = Query(..., alias="endTime"),
                       db: Session = Depends(get_db)):
    """Whether the spot can be booked for [startTime, endTime)"""
    available = is_available(db, spot_id, start_time, end_time)
    return {"spot_id": spot_id, "start_time": start_time, "end_time": end_time,
            "available": available}


@app.post("/spots", response_model=schemas.SpotResponse, status_code=201)
def create_spot(spot: schemas.SpotCreate, db: Session = Depends(get_db),
                admin: models.User = Depends(require_admin)):
    if crud.get_spot_by_number(db, spot.spot_number):
        raise DuplicateRecord(f"Spot number {spot.spot_number} already exists")
    db_spot = crud.create_spot(db, spot)
    logger.info(f"Spot {db_spot.id} ({db_spot.spot_number}) created by admin {admin.id}")
    return schemas.SpotResponse.from_spot(db_spot, derive_spot_status(db, db_spot))


@app.put("/spots/{spot_id}", response_model=schemas.SpotResponse)
def update_spot(spot_id: int, spot_update: schemas.SpotUpdate, db: Session = Depends(get_db),
                admin: models.User = Depends(require_admin)):
    """Edit spot details; existing bookings keep their frozen total cost"""
    if spot_update.spot_number:
        existing = crud.get_spot_by_number(db, spot_update.spot_number)
        if existing and existing.id != spot_id:
            raise DuplicateRecord(f"Spot number {spot_update.spot_number} already exists")
    db_spot = crud.update_spot(db, spot_id, spot_update)
    if not db_spot:
        raise SpotNotFound(spot_id)
    logger.info(f"Spot {spot_id} updated by admin {admin.id}")
    return schemas.SpotResponse.from_spot(db_spot, derive_spot_status(db, db_spot))


@app.patch("/spots/{spot_id}/status", response_model=schemas.SpotResponse)
def update_spot_status(spot_id: int, payload: schemas.SpotStatusUpdate,
                       db: Session = Depends(get_db),
                       admin: models.User = Depends(require_admin)):
    """Force maintenance, or hand the status back to booking-derived mode"""
    mode = (models.SpotStatusMode.FORCED_MAINTENANCE if payload.status == "maintenance"
            else models.SpotStatusMode.AUTO)
    db_spot = crud.set_spot_status_mode(db, spot_id, mode)
    if not db_spot:
        raise SpotNotFound(spot_id)
    logger.info(f"Spot {spot_id} status mode set to {mode.value} by admin {admin.id}")
    return schemas.SpotResponse.from_spot(db_spot, derive_spot_status(db, db_spot))


@app.delete("/spots/{spot_id}", status_code=204)
def delete_spot(spot_id: int, db: Session = Depends(get_db),
                admin: models.User = Depends(require_admin)):
    if not crud.get_spot(db, spot_id):
        raise SpotNotFound(spot_id)
    if crud.count_bookings_for_spot(db, spot_id):
        raise ConflictError(f"Spot {spot_id} has bookings; put it under maintenance instead",
                            "SpotInUse")
    crud.delete_spot(db, spot_id)
    logger.info(f"Spot {spot_id} deleted by admin {admin.id}")


# ==================== BOOKINGS ====================

@app.post("/bookings", response_model=schemas.BookingResponse, status_code=201)
def create_booking(payload: schemas.BookingCreate, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    return BookingService(db).create(
        current_user,
        payload.spot_id,
        payload.start_time,
        payload.end_time,
        payload.vehicle_info,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )


@app.get("/bookings", response_model=schemas.Page[schemas.BookingResponse])
def list_bookings(status: Optional[str] = None,
                  page: Optional[int] = None,
                  limit: Optional[int] = None,
                  sort_by: Optional[str] = Query(None, alias="sortBy"),
                  sort_order: Optional[str] = Query(None, alias="sortOrder"),
                  db: Session = Depends(get_db),
                  current_user: models.User = Depends(get_current_user)):
    return queries.list_bookings(db, current_user, status=status, page=page, limit=limit,
                                 sort_by=sort_by, sort_order=sort_order)


@app.post("/bookings/expire")
def expire_bookings(db: Session = Depends(get_db), admin: models.User = Depends(require_admin)):
    """Run the expiry sweep now"""
    return {"expired": BookingService(db).expire_due()}


@app.get("/bookings/spot/{spot_id}", response_model=schemas.Page[schemas.BookingResponse])
def list_spot_bookings(spot_id: int,
                       status: Optional[str] = None,
                       page: Optional[int] = None,
                       limit: Optional[int] = None,
                       sort_by: Optional[str] = Query(None, alias="sortBy"),
                       sort_order: Optional[str] = Query(None, alias="sortOrder"),
                       db: Session = Depends(get_db),
                       admin: models.User = Depends(require_admin)):
    """All bookings of one spot (admin only)"""
    return queries.list_spot_bookings(db, spot_id, status=status, page=page, limit=limit,
                                      sort_by=sort_by, sort_order=sort_order)


@app.get("/bookings/{booking_id}", response_model=schemas.BookingResponse)
def get_booking(booking_id: int, db: Session = Depends(get_db),
                current_user: models.User = Depends(get_current_user)):
    return BookingService(db).get_for_actor(booking_id, current_user)


@app.put("/bookings/{booking_id}", response_model=schemas.BookingResponse)
def update_booking(booking_id: int, payload: schemas.BookingUpdate,
                   db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    """Reschedule an active booking or change its vehicle and notes"""
    vehicle_info = (payload.vehicle_info.model_dump(exclude_unset=True)
                    if payload.vehicle_info else None)
    return BookingService(db).update(
        booking_id,
        current_user,
        start_time=payload.start_time,
        end_time=payload.end_time,
        vehicle_info=vehicle_info,
        notes=payload.notes,
    )


@app.post("/bookings/{booking_id}/cancel", response_model=schemas.BookingResponse)
def cancel_booking(booking_id: int, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    return BookingService(db).cancel(booking_id, current_user)


@app.post("/bookings/{booking_id}/complete", response_model=schemas.BookingResponse)
def complete_booking(booking_id: int, db: Session = Depends(get_db),
                     current_user: models.User = Depends(get_current_user)):
    return BookingService(db).complete(booking_id, current_user)


# ==================== PAYMENTS ====================

@app.post("/payments", response_model=schemas.PaymentResponse, status_code=201)
def record_payment(payload: schemas.PaymentCreate, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    return PaymentReconciler(db).record_payment(payload.booking_id, payload.amount, payload.method,
                                                current_user, payload.payment_details)


@app.get("/payments", response_model=schemas.Page[schemas.PaymentResponse])
def list_payments(status: Optional[str] = None,
                  page: Optional[int] = None,
                  limit: Optional[int] = None,
                  sort_by: Optional[str] = Query(None, alias="sortBy"),
                  sort_order: Optional[str] = Query(None, alias="sortOrder"),
                  db: Session = Depends(get_db),
                  current_user: models.User = Depends(get_current_user)):
    """Payment history; admins see all payments"""
    return queries.list_payments(db, current_user, status=status, page=page, limit=limit,
                                 sort_by=sort_by, sort_order=sort_order)


@app.get("/payments/{payment_id}", response_model=schemas.PaymentResponse)
def get_payment(payment_id: int, db: Session = Depends(get_db),
                current_user: models.User = Depends(get_current_user)):
    return PaymentReconciler(db).get_for_actor(payment_id, current_user)


@app.post("/payments/{payment_id}/complete", response_model=schemas.PaymentResponse)
def complete_payment(payment_id: int, payload: schemas.PaymentComplete,
                     db: Session = Depends(get_db),
                     current_user: models.User = Depends(get_current_user)):
    return PaymentReconciler(db).mark_completed(payment_id, payload.transaction_id, current_user,
                                                payload.payment_details)


@app.post("/payments/{payment_id}/fail", response_model=schemas.PaymentResponse)
def fail_payment(payment_id: int, payload: schemas.PaymentFail, db: Session = Depends(get_db),
                 current_user: models.User = Depends(get_current_user)):
    return PaymentReconciler(db).mark_failed(payment_id, payload.reason, current_user)


@app.post("/payments/{payment_id}/refund", response_model=schemas.PaymentResponse)
def refund_payment(payment_id: int, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    return PaymentReconciler(db).refund(payment_id, current_user)


@app.get("/payments/{payment_id}/receipt", response_model=schemas.ReceiptResponse)
def payment_receipt(payment_id: int, db: Session = Depends(get_db),
                    current_user: models.User = Depends(get_current_user)):
    return PaymentReconciler(db).receipt(payment_id, current_user)


# ==================== DASHBOARD ====================

@app.get("/dashboard/stats", response_model=schemas.DashboardStats)
def dashboard_stats(db: Session = Depends(get_db),
                    current_user: models.User = Depends(get_current_user)):
    return queries.dashboard_stats(db, current_user)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("parking_reservations.main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
