from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from core.exceptions import InvalidTransitionError


def utc_now_iso() -> str:
    """Current UTC time as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class AppType(str, Enum):
    PHP = "php"
    LARAVEL = "laravel"
    NODEJS = "nodejs"
    NODEJS_TYPESCRIPT = "nodejs-typescript"
    NEXTJS = "nextjs"
    STATIC = "static"
    PYTHON = "python"
    CUSTOM = "custom"


class AppStatus(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    ERROR = "error"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    CLONING = "cloning"
    BUILDING = "building"
    STARTING = "starting"
    SUCCESS = "success"
    FAILED = "failed"


class GitProvider(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    OTHER = "other"


class GitAuthMethod(str, Enum):
    NONE = "none"
    TOKEN = "token"
    SSH = "ssh"
    USERNAME_PASSWORD = "username_password"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


class LogStep(str, Enum):
    INIT = "init"
    CLONE = "clone"
    CONFIG = "config"
    BUILD = "build"
    START = "start"
    DONE = "done"
    ERROR = "error"


class LogStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


# --- applications ---


class EnvVariable(BaseModel):
    key: str
    value: str = ""
    is_secret: bool = False


def merge_env_variables(*groups: List[EnvVariable]) -> List[EnvVariable]:
    """Concatenate env lists keeping keys unique; a later key replaces the value in place."""
    merged: Dict[str, EnvVariable] = {}
    for group in groups:
        for var in group:
            merged[var.key] = var
    return list(merged.values())


class GitConfig(BaseModel):
    url: str
    branch: str = "main"
    provider: GitProvider = GitProvider.OTHER
    is_private: bool = False
    auth_method: GitAuthMethod = GitAuthMethod.NONE
    access_token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    ssh_private_key: Optional[str] = None

    def public_view(self) -> dict:
        data = self.model_dump(
            mode="json",
            exclude={"access_token", "password", "ssh_private_key"},
        )
        data["has_credentials"] = bool(
            self.access_token or self.password or self.ssh_private_key
        )
        return data


class ApplicationRecord(BaseModel):
    id: str
    name: str
    type: AppType
    internal_port: int
    external_port: int
    path: str
    git: Optional[GitConfig] = None
    env_variables: List[EnvVariable] = Field(default_factory=list)
    dockerfile: Optional[str] = None
    docker_compose: Optional[str] = None
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    domain: Optional[str] = None
    status: AppStatus = AppStatus.PENDING
    last_error: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    container_id: Optional[str] = None
    container_name: Optional[str] = None

    def touch(self) -> None:
        self.updated_at = utc_now_iso()

    def public_view(self) -> dict:
        data = self.model_dump(mode="json", exclude={"git"})
        data["git"] = self.git.public_view() if self.git else None
        return data


class AppTemplate(BaseModel):
    type: AppType
    name: str
    description: str
    dockerfile: str
    docker_compose: str
    default_env_variables: List[EnvVariable] = Field(default_factory=list)
    default_internal_port: int
    build_command: Optional[str] = None
    start_command: Optional[str] = None


# --- deployments ---


_ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: {
        DeploymentStatus.CLONING,
        DeploymentStatus.BUILDING,
        DeploymentStatus.FAILED,
    },
    DeploymentStatus.CLONING: {DeploymentStatus.BUILDING, DeploymentStatus.FAILED},
    DeploymentStatus.BUILDING: {DeploymentStatus.STARTING, DeploymentStatus.FAILED},
    DeploymentStatus.STARTING: {DeploymentStatus.SUCCESS, DeploymentStatus.FAILED},
    DeploymentStatus.SUCCESS: set(),
    DeploymentStatus.FAILED: set(),
}

TERMINAL_STATUSES = frozenset({DeploymentStatus.SUCCESS, DeploymentStatus.FAILED})


class DeploymentLog(BaseModel):
    timestamp: str = Field(default_factory=utc_now_iso)
    level: LogLevel = LogLevel.INFO
    message: str
    step: LogStep = LogStep.INIT


class Deployment(BaseModel):
    """One deployment attempt. Forward-only; frozen once terminal."""

    id: str
    app_id: str
    status: DeploymentStatus = DeploymentStatus.PENDING
    started_at: str = Field(default_factory=utc_now_iso)
    finished_at: Optional[str] = None
    logs: List[DeploymentLog] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, target: DeploymentStatus) -> None:
        target = DeploymentStatus(target)
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target
        if target in TERMINAL_STATUSES:
            self.finished_at = utc_now_iso()

    def add_log(self, level: LogLevel, message: str, step: LogStep) -> DeploymentLog:
        if self.is_terminal:
            raise InvalidTransitionError(self.status.value, "log")
        entry = DeploymentLog(level=level, message=message, step=step)
        self.logs.append(entry)
        return entry

    def fail(self, error: str) -> None:
        self.transition(DeploymentStatus.FAILED)
        self.error = error

    def succeed(self) -> None:
        self.transition(DeploymentStatus.SUCCESS)


# --- ports ---


class PortRange(BaseModel):
    start: int
    end: int


class PortAllocation(BaseModel):
    port: int
    app_id: str
    app_name: str
    allocated_at: str = Field(default_factory=utc_now_iso)


# --- container logs ---


class LogEntry(BaseModel):
    timestamp: str
    message: str
    stream: LogStream = LogStream.STDOUT


# --- requests ---


class GitConfigInput(BaseModel):
    """Partial Git configuration as submitted by a client."""

    url: Optional[str] = None
    branch: Optional[str] = None
    is_private: Optional[bool] = None
    auth_method: Optional[GitAuthMethod] = None
    access_token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    ssh_private_key: Optional[str] = None


class CreateAppRequest(BaseModel):
    name: str
    type: AppType
    git: Optional[GitConfigInput] = None
    env_variables: List[EnvVariable] = Field(default_factory=list)
    internal_port: Optional[int] = Field(default=None, ge=1, le=65535)
    external_port: Optional[int] = Field(default=None, ge=1, le=65535)
    dockerfile: Optional[str] = None
    docker_compose: Optional[str] = None
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    domain: Optional[str] = None


class UpdateAppRequest(BaseModel):
    name: Optional[str] = None
    git: Optional[GitConfigInput] = None
    env_variables: Optional[List[EnvVariable]] = None
    internal_port: Optional[int] = Field(default=None, ge=1, le=65535)
    dockerfile: Optional[str] = None
    docker_compose: Optional[str] = None
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    domain: Optional[str] = None
