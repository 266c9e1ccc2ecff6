"""Git source resolution: provider detection, validation, clone URLs, SSH keys.

Everything except the SSH helpers is pure data transformation and performs
no I/O, so authentication handling can be tested without a network.
"""
import os
import shlex
import shutil
import stat
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union
from urllib.parse import quote, urlsplit, urlunsplit

from core.schemas import GitAuthMethod, GitConfig, GitProvider

SSH_DIR_NAME = ".ssh"
SSH_KEY_NAME = "id_rsa"

_SSH_CONFIG = (
    "Host *\n"
    "  StrictHostKeyChecking no\n"
    "  UserKnownHostsFile=/dev/null\n"
)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def detect_provider(url: str) -> GitProvider:
    lower = (url or "").lower()
    if "github." in lower:
        return GitProvider.GITHUB
    if "gitlab." in lower:
        return GitProvider.GITLAB
    if "bitbucket." in lower:
        return GitProvider.BITBUCKET
    return GitProvider.OTHER


def is_ssh_url(url: str) -> bool:
    return url.startswith("git@") or url.startswith("ssh://")


def _is_valid_url(url: str) -> bool:
    if url.startswith("git@"):
        host, sep, path = url[len("git@"):].partition(":")
        return bool(host and sep and path)
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return bool(parts.scheme and parts.netloc)


def validate(git: Union[GitConfig, Dict]) -> ValidationResult:
    """Check a Git configuration. Accepts a model or a partial dict."""
    if isinstance(git, GitConfig):
        data = git.model_dump()
    else:
        data = dict(git or {})

    errors: List[str] = []
    url = (data.get("url") or "").strip()
    if not url:
        errors.append("Repository URL is required")
    elif not _is_valid_url(url):
        errors.append("Repository URL is invalid")

    if data.get("is_private"):
        raw_method = data.get("auth_method") or GitAuthMethod.NONE
        try:
            method = GitAuthMethod(raw_method)
        except ValueError:
            method = None
            errors.append(f"Unknown authentication method: {raw_method}")

        if method == GitAuthMethod.NONE:
            errors.append("An authentication method is required for a private repository")
        elif method == GitAuthMethod.TOKEN and not data.get("access_token"):
            errors.append("Access token is required for token authentication")
        elif method == GitAuthMethod.USERNAME_PASSWORD:
            if not data.get("username"):
                errors.append("Username is required")
            if not data.get("password"):
                errors.append("Password is required")
        elif method == GitAuthMethod.SSH and not data.get("ssh_private_key"):
            errors.append("SSH private key is required for SSH authentication")

    return ValidationResult(valid=not errors, errors=errors)


def _with_userinfo(url: str, userinfo: str) -> str:
    parts = urlsplit(url)
    host = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))


def build_clone_url(git: GitConfig) -> str:
    """URL to hand to ``git clone``, with credentials embedded where needed."""
    if not git.is_private or git.auth_method == GitAuthMethod.NONE:
        return git.url

    if git.auth_method == GitAuthMethod.SSH:
        if git.url.startswith("https://"):
            host, _, path = git.url[len("https://"):].partition("/")
            host = host.rsplit("@", 1)[-1]
            if host and path:
                return f"git@{host}:{path}"
        return git.url

    try:
        parts = urlsplit(git.url)
    except ValueError:
        return git.url
    if not parts.scheme or not parts.netloc:
        return git.url

    if git.auth_method == GitAuthMethod.TOKEN and git.access_token:
        token = quote(git.access_token, safe="")
        provider = git.provider
        if provider == GitProvider.GITLAB:
            userinfo = f"oauth2:{token}"
        elif provider == GitProvider.GITHUB:
            userinfo = f"{token}:x-oauth-basic"
        elif provider == GitProvider.BITBUCKET:
            userinfo = f"x-token-auth:{token}"
        else:
            userinfo = token
        return _with_userinfo(git.url, userinfo)

    if git.auth_method == GitAuthMethod.USERNAME_PASSWORD and git.username and git.password:
        userinfo = f"{quote(git.username, safe='')}:{quote(git.password, safe='')}"
        return _with_userinfo(git.url, userinfo)

    return git.url


# -------------------------
# SSH credentials
# -------------------------
def provision_ssh(git: GitConfig, work_dir) -> Optional[Path]:
    """Write the private key and an SSH client config under ``work_dir/.ssh``."""
    if git.auth_method != GitAuthMethod.SSH or not git.ssh_private_key:
        return None

    ssh_dir = Path(work_dir) / SSH_DIR_NAME
    ssh_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(ssh_dir, stat.S_IRWXU)

    key_path = ssh_dir / SSH_KEY_NAME
    key = git.ssh_private_key
    if not key.endswith("\n"):
        key += "\n"
    fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(key)
    os.chmod(key_path, 0o600)

    config_path = ssh_dir / "config"
    fd = os.open(str(config_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(_SSH_CONFIG)
    return key_path


def cleanup_ssh(work_dir) -> None:
    ssh_dir = Path(work_dir) / SSH_DIR_NAME
    if ssh_dir.exists():
        shutil.rmtree(ssh_dir, ignore_errors=True)


def ssh_command(key_path: Path) -> str:
    return (
        f"ssh -i {shlex.quote(str(key_path))} -o IdentitiesOnly=yes "
        "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"
    )


@contextmanager
def ssh_credentials(git: Optional[GitConfig], work_dir) -> Iterator[Dict[str, str]]:
    """Yield the extra clone environment; SSH material is removed on every exit path."""
    if git is None or git.auth_method != GitAuthMethod.SSH or not git.ssh_private_key:
        yield {}
        return
    try:
        key_path = provision_ssh(git, work_dir)
        yield {"GIT_SSH_COMMAND": ssh_command(key_path)} if key_path else {}
    finally:
        cleanup_ssh(work_dir)


class GitSourceResolver:
    """Injectable facade over the functions above."""

    detect_provider = staticmethod(detect_provider)
    validate = staticmethod(validate)
    build_clone_url = staticmethod(build_clone_url)
    provision_ssh = staticmethod(provision_ssh)
    cleanup_ssh = staticmethod(cleanup_ssh)
    ssh_credentials = staticmethod(ssh_credentials)
