from typing import Any, Optional


class ProtocolError(ValueError):
    """A frame from a tv agent that cannot be used."""


class DeviceNotConnected(Exception):
    def __init__(self, device_id: str):
        super().__init__(f"TV {device_id} is not connected")
        self.device_id = device_id


class SendFailed(Exception):
    def __init__(self, device_id: str, cause: BaseException):
        super().__init__(f"Failed to send command to TV {device_id}: {cause}")
        self.device_id = device_id
        self.cause = cause


class RentalError(Exception):
    """Base for every failure reported to the caller of a rental start.

    `category` is the machine-checkable bucket the front-end switches on.
    """

    category = "internal"
    status_code = 500

    def __init__(self, message: str, device: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.device = device

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "category": self.category,
            "message": self.message,
        }
        if self.device is not None:
            body["device"] = self.device
        return body


class ValidationFailed(RentalError):
    category = "validation"
    status_code = 400


class DeviceUnavailable(RentalError):
    category = "device_unavailable"
    status_code = 503


class DeviceFailed(RentalError):
    category = "device_failed"
    status_code = 503


class DeviceTimeout(RentalError):
    category = "device_timeout"
    status_code = 408
