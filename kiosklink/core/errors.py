from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIError(HTTPException):
    """Base API error with consistent error code format."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            status_code=status_code,
            detail={
                "code": code,
                "message": message,
                "details": details or {}
            }
        )


class DeviceNotReadyError(APIError):
    """503 error when the agent has not started a page session yet."""

    def __init__(self, reason: str = "Device agent is not running"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="DEVICE_NOT_READY",
            message=reason,
            details={}
        )


class StoreError(Exception):
    """Internal exception for backing store failures (not HTTP)."""

    def __init__(self, error_code: str, message: str = ""):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class StoreTransportError(StoreError):
    """Network failure or timeout talking to the store."""

    def __init__(self, message: str = ""):
        super().__init__("TRANSPORT_ERROR", message)


class RowNotFoundError(StoreError):
    """The filtered row does not exist (cached identity is stale)."""

    def __init__(self, screen_id: Optional[str] = None):
        self.screen_id = screen_id
        super().__init__("ROW_NOT_FOUND", f"No screen row matched id={screen_id}")


class UniqueViolationError(StoreError):
    """Insert collided with a unique constraint (pairing code already taken)."""

    def __init__(self, message: str = ""):
        super().__init__("UNIQUE_VIOLATION", message)


class StoreRequestError(StoreError):
    """Store rejected the request for any other reason."""

    def __init__(self, error_code: str, message: str = "", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(error_code, message)
