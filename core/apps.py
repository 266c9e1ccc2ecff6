"""Application records: creation, update, deletion and lookups."""
import re
import secrets
import shutil
import string
import time
from pathlib import Path
from typing import List, Optional

from loguru import logger

from core.deployment import DeploymentEngine
from core.exceptions import (
    AppAlreadyExistsError,
    AppNotFoundError,
    InvalidGitConfigError,
    ShipyardError,
    ValidationError,
)
from core.git_source import GitSourceResolver, ValidationResult
from core.network import PortAllocator
from core.registry import ApplicationRegistry
from core.schemas import (
    ApplicationRecord,
    AppTemplate,
    CreateAppRequest,
    EnvVariable,
    GitAuthMethod,
    GitConfig,
    GitConfigInput,
    UpdateAppRequest,
    merge_env_variables,
)
from core.templates import get_template, list_templates

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_BASE36 = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_app_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"app-{_base36(int(time.time() * 1000))}-{suffix}"


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", name.lower())


def container_name_for(prefix: str, name: str) -> str:
    return f"{prefix}-{slugify(name)}"


def validate_name(name: Optional[str]) -> None:
    if not name or len(name) < 2:
        raise ValidationError("Application name must be at least 2 characters long")
    if not NAME_PATTERN.match(name):
        raise ValidationError(
            "Application name may only contain letters, digits, dashes and underscores"
        )


def normalize_repo_url(url: str) -> str:
    """Reduce a clone URL to ``host/owner/repo`` for comparisons."""
    value = (url or "").strip().lower()
    if value.startswith("git@"):
        value = value[len("git@"):].replace(":", "/", 1)
    else:
        value = re.sub(r"^[a-z][a-z0-9+.-]*://", "", value)
        value = value.rsplit("@", 1)[-1]
    value = value.rstrip("/")
    if value.endswith(".git"):
        value = value[:-4]
    return value


class ApplicationService:
    def __init__(
        self,
        registry: ApplicationRegistry,
        allocator: PortAllocator,
        deployments: DeploymentEngine,
        apps_root,
        container_prefix: str = "shipyard",
        resolver: Optional[GitSourceResolver] = None,
    ):
        self.registry = registry
        self.allocator = allocator
        self.deployments = deployments
        self.apps_root = Path(apps_root)
        self.container_prefix = container_prefix
        self.resolver = resolver or GitSourceResolver()

    # -------------------------
    # git config
    # -------------------------
    def _merge_git(self, data: GitConfigInput, current: Optional[GitConfig] = None) -> GitConfig:
        url = data.url if data.url is not None else (current.url if current else None)
        if not url:
            raise InvalidGitConfigError(["Repository URL is required"])
        is_private = (
            data.is_private
            if data.is_private is not None
            else (current.is_private if current else False)
        )
        if data.auth_method is not None:
            auth_method = data.auth_method
        elif current is not None:
            auth_method = current.auth_method
        else:
            auth_method = GitAuthMethod.TOKEN if is_private else GitAuthMethod.NONE

        def pick(field: str):
            value = getattr(data, field)
            if value is not None:
                return value or None
            return getattr(current, field) if current else None

        git_config = GitConfig(
            url=url,
            branch=data.branch or (current.branch if current else "main"),
            provider=self.resolver.detect_provider(url),
            is_private=is_private,
            auth_method=auth_method,
            access_token=pick("access_token"),
            username=pick("username"),
            password=pick("password"),
            ssh_private_key=pick("ssh_private_key"),
        )
        result = self.resolver.validate(git_config)
        if not result.valid:
            raise InvalidGitConfigError(result.errors)
        return git_config

    def validate_git(self, data: dict) -> ValidationResult:
        return self.resolver.validate(data)

    def _system_env(self, app: ApplicationRecord) -> List[EnvVariable]:
        return [
            EnvVariable(key="APP_NAME", value=app.container_name or app.name),
            EnvVariable(key="EXTERNAL_PORT", value=str(app.external_port)),
            EnvVariable(key="INTERNAL_PORT", value=str(app.internal_port)),
        ]

    # -------------------------
    # CRUD
    # -------------------------
    def create(self, request: CreateAppRequest) -> ApplicationRecord:
        validate_name(request.name)
        template = get_template(request.type)
        if template is None:
            raise ValidationError(f"Unsupported application type: {request.type}")

        git_config = None
        if request.git is not None and request.git.url:
            git_config = self._merge_git(request.git)

        if self.registry.get_by_name(request.name) is not None:
            raise AppAlreadyExistsError(request.name)

        app_id = new_app_id()
        external_port = self.allocator.allocate(app_id, request.name, request.external_port)
        try:
            internal_port = request.internal_port or template.default_internal_port
            app = ApplicationRecord(
                id=app_id,
                name=request.name,
                type=template.type,
                internal_port=internal_port,
                external_port=external_port,
                path=str(self.apps_root / slugify(request.name)),
                git=git_config,
                dockerfile=request.dockerfile or template.dockerfile,
                docker_compose=request.docker_compose or template.docker_compose,
                build_command=request.build_command or template.build_command,
                start_command=request.start_command or template.start_command,
                domain=request.domain,
                container_name=container_name_for(self.container_prefix, request.name),
            )
            app.env_variables = merge_env_variables(
                template.default_env_variables,
                request.env_variables,
                self._system_env(app),
            )
            self.deployments.write_app_files(app)
        except OSError as e:
            self.allocator.release(app_id)
            raise ShipyardError(f"Could not prepare directory for {request.name}: {e}") from e
        except Exception:
            self.allocator.release(app_id)
            raise

        self.registry.put(app)
        logger.info(f"Created application {app.name} ({app.id}) on port {app.external_port}")
        return app

    def update(self, app_id: str, request: UpdateAppRequest) -> ApplicationRecord:
        app = self.get(app_id)
        changes = request.model_dump(exclude_unset=True)

        # validate everything before touching the stored record
        git_config = app.git
        if request.git is not None:
            if request.git.url == "":
                git_config = None
            else:
                git_config = self._merge_git(request.git, app.git)

        if request.name is not None and request.name != app.name:
            validate_name(request.name)
            other = self.registry.get_by_name(request.name)
            if other is not None and other.id != app.id:
                raise AppAlreadyExistsError(request.name)
            app.name = request.name
        app.git = git_config

        for field in ("dockerfile", "docker_compose", "build_command", "start_command", "domain"):
            if field in changes:
                setattr(app, field, changes[field])
        if request.internal_port is not None:
            app.internal_port = request.internal_port
        if request.env_variables is not None:
            app.env_variables = list(request.env_variables)
        app.env_variables = merge_env_variables(app.env_variables, self._system_env(app))

        app.touch()
        self.deployments.write_app_files(app)
        self.registry.put(app)
        logger.info(f"Updated application {app.name} ({app.id})")
        return app

    async def delete(self, app_id: str) -> None:
        """Stop, release and remove. Each step is best-effort."""
        app = self.get(app_id)
        await self.deployments.teardown(app)
        try:
            self.allocator.release(app_id)
        except Exception as e:
            logger.warning(f"Failed to release port of {app.name}: {e}")
        try:
            if Path(app.path).exists():
                shutil.rmtree(app.path)
        except OSError as e:
            logger.warning(f"Failed to remove {app.path}: {e}")
        self.registry.delete(app_id)
        logger.info(f"Deleted application {app.name} ({app.id})")

    # -------------------------
    # lookups
    # -------------------------
    def get(self, app_id: str) -> ApplicationRecord:
        app = self.registry.get(app_id)
        if app is None:
            raise AppNotFoundError(app_id)
        return app

    def get_by_name(self, name: str) -> ApplicationRecord:
        app = self.registry.get_by_name(name)
        if app is None:
            raise AppNotFoundError(name)
        return app

    def list(self) -> List[ApplicationRecord]:
        return sorted(self.registry.list(), key=lambda a: a.created_at)

    def templates(self) -> List[AppTemplate]:
        return list_templates()

    def find_by_repository(self, repo_url: str, branch: Optional[str] = None) -> List[ApplicationRecord]:
        wanted = normalize_repo_url(repo_url)
        matches = []
        for app in self.registry.list():
            if not app.git or normalize_repo_url(app.git.url) != wanted:
                continue
            if branch is not None and app.git.branch != branch:
                continue
            matches.append(app)
        return matches
