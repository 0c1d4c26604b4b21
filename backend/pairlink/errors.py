"""Error taxonomy shared by the signaling core.

Every error carries a machine-readable ``code`` that is safe to send to a
client. Messages are generic; internal details stay in the logs.
"""

from typing import Optional


class SignalingError(Exception):
    """Base exception for user-visible signaling failures."""
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


class EventValidationError(SignalingError):
    """Malformed or missing event fields. The event is dropped."""
    code = "INVALID_PAYLOAD"


class CapacityError(SignalingError):
    """Expected, non-retryable until the limiting window resets."""
    code = "CAPACITY_EXCEEDED"


class RoomFullError(CapacityError):
    code = "ROOM_FULL"

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"Room {room_id} is full")


class ConnectionLimitExceeded(CapacityError):
    code = "CONNECTION_LIMIT_EXCEEDED"

    def __init__(self, current: int, limit: int):
        self.current = current
        self.limit = limit
        super().__init__("Maximum number of relay connections exceeded")


class QuotaExceeded(CapacityError):
    code = "QUOTA_EXCEEDED"

    def __init__(self, used: int, limit: int):
        self.used = used
        self.limit = limit
        super().__init__("Daily relay usage quota exceeded")


class StoreUnavailable(SignalingError):
    """The shared state store could not be reached."""
    code = "STORE_UNAVAILABLE"

    def __init__(self, message: str = "State store unavailable"):
        super().__init__(message)
