import base64
import logging
from io import BytesIO
from typing import Any, Dict, Optional

import qrcode
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .booking_service import ensure_owner_or_admin
from .errors import (AlreadyFinalized, AlreadyPaid, AmountMismatch, AuthzError, BookingNotFound,
                     DuplicateRecord, InvalidRefundState, InvalidTransitionError, ParkingError,
                     PaymentNotFound)
from .models import (Booking, BookingPaymentStatus, BookingStatus, Payment, PaymentMethod,
                     PaymentStatus, User, to_cents, utcnow)

logger = logging.getLogger(__name__)

PAYABLE_BOOKING_STATUSES = (BookingStatus.ACTIVE, BookingStatus.COMPLETED)
REFUNDABLE_BOOKING_STATUSES = (BookingStatus.CANCELLED, BookingStatus.COMPLETED)


class PaymentReconciler:
    """Couples payment outcomes to ``Booking.payment_status``.

    Each method writes the payment and its booking in one commit; nothing
    else in the code base marks a booking paid or refunded.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_for_actor(self, payment_id: int, actor: User) -> Payment:
        payment = crud.get_payment(self.db, payment_id)
        if not payment:
            raise PaymentNotFound(payment_id)
        if not actor.is_admin and payment.user_id != actor.id:
            raise AuthzError("You are not allowed to access this payment")
        return payment

    def record_payment(self, booking_id: int, amount: float, method: PaymentMethod, actor: User,
                       payment_details: Optional[Dict[str, Any]] = None) -> Payment:
        """Create a pending payment for the exact booking total."""
        booking = crud.get_booking(self.db, booking_id)
        if not booking:
            raise BookingNotFound(booking_id)
        ensure_owner_or_admin(booking, actor)

        if booking.status not in PAYABLE_BOOKING_STATUSES:
            raise InvalidTransitionError(f"Cannot pay for a booking that is {booking.status.value}")
        if booking.payment_status == BookingPaymentStatus.PAID:
            raise AlreadyPaid(booking_id)
        if booking.payment_status == BookingPaymentStatus.REFUNDED:
            raise InvalidTransitionError(f"Booking {booking_id} has already been refunded")
        if to_cents(amount) != to_cents(booking.total_cost):
            logger.warning(f"Amount mismatch for booking {booking_id}: got {amount}, "
                           f"expected {booking.total_cost}")
            raise AmountMismatch(amount, booking.total_cost)

        try:
            payment = Payment(
                user_id=booking.user_id,
                booking_id=booking.id,
                amount=round(amount, 2),
                method=method,
                status=PaymentStatus.PENDING,
                payment_details=payment_details,
            )
            self.db.add(payment)
            booking.payment_method = method
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        logger.info(f"Payment {payment.id} recorded for booking {booking_id}: "
                    f"{payment.amount:.2f} via {method.value}")
        return payment

    def mark_completed(self, payment_id: int, transaction_id: str, actor: User,
                       payment_details: Optional[Dict[str, Any]] = None) -> Payment:
        """pending -> completed, and the booking becomes paid in the same commit.

        The booking row is locked first, so two pending payments of one
        booking cannot both complete, and a booking that was cancelled or
        refunded meanwhile is re-checked under the lock.
        """
        payment = self.get_for_actor(payment_id, actor)
        if payment.status != PaymentStatus.PENDING:
            raise AlreadyFinalized(payment_id, payment.status.value)

        details = dict(payment.payment_details or {})
        if payment_details:
            details.update(payment_details)

        try:
            booking = self.db.query(Booking).filter(
                Booking.id == payment.booking_id
            ).with_for_update().populate_existing().one()
            if booking.status not in PAYABLE_BOOKING_STATUSES:
                raise InvalidTransitionError(
                    f"Cannot complete a payment for a booking that is {booking.status.value}")
            if booking.payment_status == BookingPaymentStatus.PAID:
                raise AlreadyPaid(booking.id)
            if booking.payment_status == BookingPaymentStatus.REFUNDED:
                raise InvalidTransitionError(f"Booking {booking.id} has already been refunded")
            if to_cents(payment.amount) != to_cents(booking.total_cost):
                raise AmountMismatch(payment.amount, booking.total_cost)

            already_completed = self.db.query(Payment).filter(
                Payment.booking_id == booking.id,
                Payment.status == PaymentStatus.COMPLETED,
            ).first()
            if already_completed:
                raise AlreadyPaid(booking.id)

            updated = self.db.query(Payment).filter(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING,
            ).update({
                Payment.status: PaymentStatus.COMPLETED,
                Payment.transaction_id: transaction_id,
                Payment.payment_details: details or None,
                Payment.updated_at: utcnow(),
            }, synchronize_session=False)
            if not updated:
                raise AlreadyFinalized(payment_id, payment.status.value)
            self.db.query(Booking).filter(Booking.id == booking.id).update(
                {Booking.payment_status: BookingPaymentStatus.PAID, Booking.updated_at: utcnow()},
                synchronize_session=False)
            self.db.commit()
        except ParkingError as e:
            self.db.rollback()
            logger.warning(f"Payment {payment_id} not completed: {e}")
            raise
        except IntegrityError:
            self.db.rollback()
            raise DuplicateRecord(f"Transaction id {transaction_id} is already recorded")
        except SQLAlchemyError:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        logger.info(f"Payment {payment_id} completed (transaction {transaction_id}); "
                    f"booking {payment.booking_id} marked paid")
        return payment

    def mark_failed(self, payment_id: int, reason: str, actor: User) -> Payment:
        """pending -> failed; the booking stays payable through a new payment."""
        payment = self.get_for_actor(payment_id, actor)
        if payment.status != PaymentStatus.PENDING:
            raise AlreadyFinalized(payment_id, payment.status.value)

        details = dict(payment.payment_details or {})
        details["failureReason"] = reason

        try:
            updated = self.db.query(Payment).filter(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING,
            ).update({
                Payment.status: PaymentStatus.FAILED,
                Payment.payment_details: details,
                Payment.updated_at: utcnow(),
            }, synchronize_session=False)
            if not updated:
                self.db.rollback()
                raise AlreadyFinalized(payment_id, payment.status.value)
            self.db.query(Booking).filter(
                Booking.id == payment.booking_id,
                Booking.payment_status == BookingPaymentStatus.PENDING,
            ).update({Booking.payment_status: BookingPaymentStatus.FAILED,
                      Booking.updated_at: utcnow()}, synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        logger.info(f"Payment {payment_id} failed: {reason}")
        return payment

    def refund(self, payment_id: int, actor: User) -> Payment:
        """completed -> refunded, only once the booking is cancelled or completed."""
        if not actor.is_admin:
            raise AuthzError("Only administrators can issue refunds")
        payment = self.get_for_actor(payment_id, actor)

        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidRefundState(
                f"Only completed payments can be refunded; payment {payment_id} is {payment.status.value}")
        booking = payment.booking
        if booking.status not in REFUNDABLE_BOOKING_STATUSES:
            raise InvalidRefundState(
                f"Booking {booking.id} is {booking.status.value}; cancel or complete it before refunding")

        try:
            updated = self.db.query(Payment).filter(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.COMPLETED,
            ).update({Payment.status: PaymentStatus.REFUNDED, Payment.updated_at: utcnow()},
                     synchronize_session=False)
            if not updated:
                self.db.rollback()
                raise InvalidRefundState(f"Payment {payment_id} is no longer completed")
            self.db.query(Booking).filter(Booking.id == booking.id).update(
                {Booking.payment_status: BookingPaymentStatus.REFUNDED, Booking.updated_at: utcnow()},
                synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        logger.info(f"Payment {payment_id} refunded; booking {booking.id} marked refunded")
        return payment

    def receipt(self, payment_id: int, actor: User) -> dict:
        payment = self.get_for_actor(payment_id, actor)
        if payment.status not in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise InvalidTransitionError("A receipt is only available for completed payments",
                                         code="ReceiptUnavailable")
        booking = payment.booking
        return {
            "payment": payment,
            "booking": booking,
            "spot_number": booking.parking_spot.spot_number,
            "location": booking.parking_spot.location,
            "issued_at": utcnow(),
            "qr_code": self.generate_qr_code(payment, booking),
        }

    def generate_qr_code(self, payment: Payment, booking: Booking) -> str:
        """PNG QR code for the receipt as a data URI"""
        qr_data = f"PAY:{payment.id}:{payment.amount:.2f}:{booking.license_plate}:{payment.transaction_id}"

        qr = qrcode.QRCode(version=1, box_size=10, border=5)
        qr.add_data(qr_data)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffer = BytesIO()
        img.save(buffer, format='PNG')
        qr_image_base64 = base64.b64encode(buffer.getvalue()).decode()

        return f"data:image/png;base64,{qr_image_base64}"
