"""Errors raised by the lifecycle services and mapped to HTTP responses."""

from __future__ import annotations

from typing import Optional


class LifecycleError(Exception):
    """Base for recoverable failures surfaced to the caller."""

    status_code = 500
    code = "lifecycle_error"

    def __init__(self, message: str, detail: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or message
        if code:
            self.code = code

    def to_payload(self) -> dict:
        return {
            "status": "error",
            "message": self.message,
            "error": self.detail,
            "error_code": self.code,
        }


class NotFound(LifecycleError):
    status_code = 404
    code = "not_found"


class InvalidRequest(LifecycleError):
    status_code = 400
    code = "invalid_request"


class Conflict(LifecycleError):
    status_code = 409
    code = "conflict"


class ActiveServerConflict(Conflict):
    """Another server already holds the single running slot."""

    code = "server_already_active"

    def __init__(self, active_server_id: str, active_server_name: str, active_status: str):
        super().__init__(
            f"Server '{active_server_name}' is {active_status}. Stop it before starting another server.",
        )
        self.active_server_id = active_server_id
        self.active_status = active_status

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["data"] = {"activeServerId": self.active_server_id, "activeStatus": self.active_status}
        return payload


class NotReady(LifecycleError):
    status_code = 400
    code = "not_ready"


class LaunchTimeout(LifecycleError):
    status_code = 504
    code = "timeout"


class ExternalProcessFailure(LifecycleError):
    status_code = 500
    code = "process_failure"

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None):
        super().__init__(message, detail=stderr.strip() or message)
        self.stderr = stderr
        self.returncode = returncode


class ProtocolFailure(LifecycleError):
    status_code = 502
    code = "rcon_failure"


class RegistryWriteError(OSError):
    """The registry document could not be persisted. Not recoverable."""
