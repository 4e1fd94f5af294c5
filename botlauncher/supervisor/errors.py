"""Launcher error taxonomy shared by the supervisor, registry and HTTP layer."""

from __future__ import annotations

from typing import Any


class LauncherError(Exception):
    """Base error carrying a stable error code and HTTP status."""

    error_code = "LAUNCHER_ERROR"
    status_code = 400

    def __init__(self, message: str, *, error_code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code

    def to_detail(self) -> dict[str, Any]:
        return {"error": self.message, "error_code": self.error_code}


class InstanceNotFound(LauncherError):
    """Unknown instance id."""

    error_code = "INSTANCE_NOT_FOUND"
    status_code = 404

    def __init__(self, instance_id: str):
        super().__init__(f"Instance not found: {instance_id}")
        self.instance_id = instance_id


class AlreadyRunning(LauncherError):
    error_code = "ALREADY_RUNNING"
    status_code = 409


class NotRunning(LauncherError):
    error_code = "NOT_RUNNING"
    status_code = 409


class PathMissing(LauncherError):
    """A path the launch depends on does not exist on disk."""

    error_code = "PATH_MISSING"
    status_code = 400

    def __init__(self, message: str, *, path: str = ""):
        super().__init__(message)
        self.path = path

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["path"] = self.path
        return detail


class PortConflict(LauncherError):
    """Candidate port is held by another instance or by the system."""

    error_code = "PORT_CONFLICT"
    status_code = 409

    def __init__(self, port: int, used_by: str | None = None):
        if used_by:
            message = f'Port {port} is used by instance "{used_by}"'
        else:
            message = f"Port {port} is already in use by the system"
        super().__init__(message)
        self.port = port
        self.used_by = used_by

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["port"] = self.port
        detail["usedBy"] = self.used_by
        return detail


class NameConflict(LauncherError):
    error_code = "NAME_CONFLICT"
    status_code = 409

    def __init__(self, name: str):
        super().__init__(f"Instance name already exists: {name}")
        self.name = name


class SpawnFailure(LauncherError):
    """The OS refused to create the process."""

    error_code = "SPAWN_FAILURE"
    status_code = 500


class StdinUnavailable(LauncherError):
    error_code = "STDIN_UNAVAILABLE"
    status_code = 409

    def __init__(self, message: str = "Instance stdin unavailable"):
        super().__init__(message)


class ResourceAlreadyRunning(LauncherError):
    error_code = "RESOURCE_ALREADY_RUNNING"
    status_code = 409

    def __init__(self, message: str = "Redis is already running"):
        super().__init__(message)


class ResourceNotRunning(LauncherError):
    error_code = "RESOURCE_NOT_RUNNING"
    status_code = 409

    def __init__(self, message: str = "Redis is not running"):
        super().__init__(message)


class InvalidOperation(LauncherError):
    """Well-formed request that the current state does not allow."""

    error_code = "INVALID_OPERATION"
    status_code = 400
