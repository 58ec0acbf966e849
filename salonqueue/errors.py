"""Typed failures raised by the queue core.

Callers branch on ``code``; ``message`` is for humans only. ``status_code``
is the HTTP-equivalent the API layer answers with.
"""


class QueueError(Exception):
    status_code = 400

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def as_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationFailed(QueueError):
    status_code = 400


class ForbiddenError(QueueError):
    status_code = 403

    def __init__(self, message: str = "Insufficient permissions", code: str = "INSUFFICIENT_PERMISSIONS"):
        super().__init__(code, message)


class NotFoundError(QueueError):
    status_code = 404


class ConflictError(QueueError):
    status_code = 409


class ExhaustedError(QueueError):
    status_code = 503


def salon_not_found() -> NotFoundError:
    return NotFoundError("SALON_NOT_FOUND", "Salon not found")


def booking_not_found() -> NotFoundError:
    return NotFoundError("BOOKING_NOT_FOUND", "Booking not found")


def staff_not_found() -> NotFoundError:
    return NotFoundError("STAFF_NOT_FOUND", "Staff member not found")
