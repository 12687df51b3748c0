"""Error kinds raised by the booking and payment services.

Every error carries an HTTP status and a specific ``code``; the API layer
renders them all through one exception handler.
"""


class ParkingError(Exception):
    status_code = 500
    kind = "ParkingError"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.kind

    def to_dict(self) -> dict:
        return {"success": False, "error": self.kind, "code": self.code, "message": self.message}


class ValidationError(ParkingError):
    status_code = 400
    kind = "ValidationError"


class AuthenticationError(ParkingError):
    status_code = 401
    kind = "AuthenticationError"


class AuthzError(ParkingError):
    status_code = 403
    kind = "AuthzError"


class NotFoundError(ParkingError):
    status_code = 404
    kind = "NotFoundError"


class ConflictError(ParkingError):
    status_code = 409
    kind = "ConflictError"


class InvalidTransitionError(ParkingError):
    status_code = 409
    kind = "InvalidTransitionError"

    def __init__(self, message: str, code: str = "InvalidTransition"):
        super().__init__(message, code)


class InvalidWindow(ValidationError):
    def __init__(self, message: str):
        super().__init__(message, "InvalidWindow")


class InvalidFilter(ValidationError):
    def __init__(self, message: str):
        super().__init__(message, "InvalidFilter")


class InvalidPagination(ValidationError):
    def __init__(self, message: str):
        super().__init__(message, "InvalidPagination")


class AmountMismatch(ValidationError):
    def __init__(self, amount: float, expected: float):
        super().__init__(f"Payment amount {amount:.2f} does not match booking total {expected:.2f}",
                         "AmountMismatch")
        self.amount = amount
        self.expected = expected


class SpotNotFound(NotFoundError):
    def __init__(self, spot_id):
        super().__init__(f"Parking spot {spot_id} not found", "SpotNotFound")


class BookingNotFound(NotFoundError):
    def __init__(self, booking_id):
        super().__init__(f"Booking {booking_id} not found", "BookingNotFound")


class PaymentNotFound(NotFoundError):
    def __init__(self, payment_id):
        super().__init__(f"Payment {payment_id} not found", "PaymentNotFound")


class UserNotFound(NotFoundError):
    def __init__(self, user_id):
        super().__init__(f"User {user_id} not found", "UserNotFound")


class SpotUnavailable(ConflictError):
    def __init__(self, message: str = "Parking spot is not available for the selected time period"):
        super().__init__(message, "SpotUnavailable")


class AlreadyFinalized(ConflictError):
    def __init__(self, payment_id, status):
        super().__init__(f"Payment {payment_id} is already {status}", "AlreadyFinalized")


class AlreadyPaid(ConflictError):
    def __init__(self, booking_id):
        super().__init__(f"Booking {booking_id} is already paid", "AlreadyPaid")


class InvalidRefundState(ConflictError):
    def __init__(self, message: str):
        super().__init__(message, "InvalidRefundState")


class DuplicateRecord(ConflictError):
    def __init__(self, message: str):
        super().__init__(message, "DuplicateRecord")
