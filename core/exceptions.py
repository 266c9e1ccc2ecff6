"""Domain exceptions.

Services raise these; the API layer maps them to HTTP responses using
``status_code`` and ``code``. Pipeline errors (clone, build) never reach an
HTTP caller: they are recorded on the Deployment instead.
"""
from typing import Any, Dict, List, Optional


class ShipyardError(Exception):
    """Base class for every error carrying a stable machine-readable code."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# --- validation (400) ---


class ValidationError(ShipyardError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidGitConfigError(ValidationError):
    code = "INVALID_GIT_CONFIG"

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(
            f"Invalid Git configuration: {', '.join(self.errors)}",
            {"errors": self.errors},
        )


# --- not found (404) ---


class NotFoundError(ShipyardError):
    status_code = 404


class AppNotFoundError(NotFoundError):
    code = "APP_NOT_FOUND"

    def __init__(self, app_id: str):
        super().__init__(f"Application not found: {app_id}", {"app_id": app_id})


class DeploymentNotFoundError(NotFoundError):
    code = "DEPLOYMENT_NOT_FOUND"

    def __init__(self, deployment_id: str):
        super().__init__(
            f"Deployment not found: {deployment_id}",
            {"deployment_id": deployment_id},
        )


class ContainerNotFoundError(NotFoundError):
    code = "CONTAINER_NOT_FOUND"

    def __init__(self, container_id: str):
        super().__init__(
            f"Container '{container_id}' not found", {"container_id": container_id}
        )


# --- state conflicts (409) ---


class ConflictError(ShipyardError):
    status_code = 409


class AppAlreadyExistsError(ConflictError):
    code = "APP_ALREADY_EXISTS"

    def __init__(self, name: str):
        super().__init__(
            f'An application named "{name}" already exists', {"name": name}
        )


class DeploymentInProgressError(ConflictError):
    code = "DEPLOYMENT_IN_PROGRESS"

    def __init__(self, app_id: str, deployment_id: Optional[str] = None):
        super().__init__(
            f"A deployment is already running for application {app_id}",
            {"app_id": app_id, "deployment_id": deployment_id},
        )


class ContainerNotRunningError(ConflictError):
    code = "CONTAINER_NOT_RUNNING"

    def __init__(self, container_id: str):
        super().__init__(
            f"Container '{container_id}' is not running",
            {"container_id": container_id},
        )


class ContainerAlreadyRunningError(ConflictError):
    code = "CONTAINER_ALREADY_RUNNING"

    def __init__(self, container_id: str):
        super().__init__(
            f"Container '{container_id}' is already running",
            {"container_id": container_id},
        )


class InvalidTransitionError(ConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move deployment from '{current}' to '{target}'",
            {"current": current, "target": target},
        )


# --- environment / resources (503) ---


class PortExhaustedError(ShipyardError):
    code = "PORT_EXHAUSTED"
    status_code = 503

    def __init__(self, start: int, end: int):
        super().__init__(
            f"No free ports available in range {start}-{end}",
            {"start": start, "end": end},
        )


class DockerUnavailableError(ShipyardError):
    code = "DOCKER_UNAVAILABLE"
    status_code = 503


# --- external process failures ---


class ComposeError(ShipyardError):
    code = "COMPOSE_ERROR"

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        self.returncode = returncode
        self.output = output
        super().__init__(message, {"returncode": returncode})


class CloneError(ShipyardError):
    """Clone failure whose message is already user-facing."""

    code = "CLONE_FAILED"


class BuildError(ShipyardError):
    code = "BUILD_FAILED"

    def __init__(self, message: str, returncode: Optional[int] = None):
        self.returncode = returncode
        super().__init__(message, {"returncode": returncode})
