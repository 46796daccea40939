# clinic_booking/errors.py
"""
Error taxonomy of the booking core.

Every failure carries an ``ErrorKind`` tag. Services raise, the HTTP boundary
(``main.py``) reads the tag and picks the status code; nothing below the
boundary knows about HTTP.
"""
import enum


class ErrorKind(str, enum.Enum):
    not_found = "not_found"
    invalid_input = "invalid_input"
    conflict = "conflict"
    forbidden = "forbidden"
    internal = "internal"


HTTP_STATUS = {
    ErrorKind.not_found: 404,
    ErrorKind.invalid_input: 400,
    ErrorKind.conflict: 409,
    ErrorKind.forbidden: 403,
    ErrorKind.internal: 500,
}


class BookingError(Exception):
    kind: ErrorKind = ErrorKind.internal

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "detail": self.message}


class NotFound(BookingError):
    kind = ErrorKind.not_found


class InvalidInput(BookingError):
    kind = ErrorKind.invalid_input


class Conflict(BookingError):
    kind = ErrorKind.conflict


class Forbidden(BookingError):
    kind = ErrorKind.forbidden


class InternalError(BookingError):
    kind = ErrorKind.internal
