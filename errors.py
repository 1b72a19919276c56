"""Shared error codes, user-facing messages and the pipeline exception types."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
DEVICE_ERROR = "DEVICE_ERROR"
CONNECT_TIMEOUT = "CONNECT_TIMEOUT"
CONNECT_ERROR = "CONNECT_ERROR"
TRANSPORT_CLOSED = "TRANSPORT_CLOSED"
MALFORMED_MESSAGE = "MALFORMED_MESSAGE"

SESSION_FAILED_MESSAGE = "Speech recognition connection failed"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone permission denied. Please allow access.",
    DEVICE_NOT_FOUND: "No microphone found.",
    DEVICE_ERROR: "Could not access microphone",
    CONNECT_TIMEOUT: SESSION_FAILED_MESSAGE,
    CONNECT_ERROR: SESSION_FAILED_MESSAGE,
    TRANSPORT_CLOSED: SESSION_FAILED_MESSAGE,
    MALFORMED_MESSAGE: "Speech recognition response format is invalid.",
}


class PipelineError(Exception):
    code = DEVICE_ERROR

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail

    @property
    def user_message(self) -> str:
        """Human-readable message for the caller's error notification."""
        return ERROR_MESSAGES[self.code]


class CaptureError(PipelineError):
    pass


class PermissionDenied(CaptureError):
    code = PERMISSION_DENIED


class DeviceNotFound(CaptureError):
    code = DEVICE_NOT_FOUND


class DeviceError(CaptureError):
    code = DEVICE_ERROR

    @property
    def user_message(self) -> str:
        if self.detail:
            return f"{ERROR_MESSAGES[self.code]}: {self.detail}"
        return ERROR_MESSAGES[self.code]


class SessionError(PipelineError):
    code = CONNECT_ERROR


class ConnectTimeout(SessionError):
    code = CONNECT_TIMEOUT


class ConnectError(SessionError):
    code = CONNECT_ERROR


class TransportClosed(SessionError):
    code = TRANSPORT_CLOSED


class MalformedMessage(PipelineError):
    code = MALFORMED_MESSAGE
