# core/git_manager.py
import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, Optional

import git
from git.exc import GitCommandError
from loguru import logger

from core.exceptions import CloneError
from core.git_source import GitSourceResolver
from core.schemas import GitConfig
from core.security import mask_secrets

PRESERVED_FILES = ("Dockerfile", "docker-compose.yml", ".env")
CLONE_DIR_PREFIX = ".clone-"


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def classify_clone_error(output: str, branch: str, timeout: Optional[int] = None) -> str:
    """Turn raw git output into a message an operator can act on."""
    if "did not complete in" in output or "Timeout:" in output:
        return f"Clone timed out after {timeout} seconds" if timeout else "Clone timed out"
    if "Authentication failed" in output or "could not read Username" in output:
        return "Authentication failed: check the access token or credentials"
    if "Repository not found" in output or "does not exist" in output:
        return "Repository not found: check the URL and your access rights"
    if "Permission denied" in output:
        return "Permission denied: check the SSH key or repository permissions"
    if "Host key verification failed" in output:
        return "Host key verification failed"
    if "Could not resolve host" in output:
        return "Could not resolve host: check the repository URL and DNS"
    if "branch" in output and "not found" in output:
        return f'Branch "{branch}" not found'
    return f"Clone failed: {output.strip()}"


class GitManager:
    """Fetches application source into its working directory.

    The clone is shallow and single-branch, lands in a hidden ``.clone-*``
    directory inside ``work_dir`` and is then flattened into ``work_dir``
    without its ``.git`` directory.
    """

    def __init__(self, resolver: Optional[GitSourceResolver] = None, clone_timeout: int = 180):
        self.resolver = resolver or GitSourceResolver()
        self.clone_timeout = clone_timeout

    def purge_workdir(self, work_dir, keep: Iterable[str] = PRESERVED_FILES) -> None:
        """Remove everything under ``work_dir`` except the files in ``keep``."""
        path = Path(work_dir)
        if not path.exists():
            return
        keep = set(keep)
        for entry in path.iterdir():
            if entry.name in keep:
                continue
            _remove(entry)
        logger.debug(f"Purged {path} (kept {', '.join(sorted(keep))})")

    def clone(self, git_config: GitConfig, work_dir) -> Optional[str]:
        """Clone ``git_config`` into ``work_dir``. Blocking.

        Returns the cloned commit hash when it can be read.

        Raises:
            CloneError: with a classified, credential-free message
        """
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        for leftover in work_dir.glob(f"{CLONE_DIR_PREFIX}*"):
            shutil.rmtree(leftover, ignore_errors=True)
        source_dir = Path(tempfile.mkdtemp(dir=work_dir, prefix=CLONE_DIR_PREFIX))

        clone_url = self.resolver.build_clone_url(git_config)
        secrets = [git_config.access_token, git_config.password]

        try:
            with self.resolver.ssh_credentials(git_config, work_dir) as ssh_env:
                env = {"GIT_TERMINAL_PROMPT": "0", **ssh_env}
                git.Git(str(work_dir)).clone(
                    "--depth", "1",
                    "--branch", git_config.branch,
                    "--single-branch",
                    "--",
                    clone_url,
                    str(source_dir),
                    env=env,
                    kill_after_timeout=self.clone_timeout,
                )
        except GitCommandError as e:
            shutil.rmtree(source_dir, ignore_errors=True)
            raw = mask_secrets(str(e), secrets)
            logger.warning(f"git clone failed: {raw}")
            raise CloneError(
                classify_clone_error(raw, git_config.branch, self.clone_timeout)
            ) from e

        commit = self.get_commit_hash(source_dir)
        self._flatten(source_dir, work_dir)
        return commit

    async def clone_async(self, git_config: GitConfig, work_dir) -> Optional[str]:
        return await asyncio.to_thread(self.clone, git_config, work_dir)

    def get_commit_hash(self, repo_path, short: bool = False) -> Optional[str]:
        try:
            hexsha = git.Repo(str(repo_path)).head.commit.hexsha
        except Exception as e:
            logger.debug(f"Could not read HEAD of {repo_path}: {e}")
            return None
        return hexsha[:7] if short else hexsha

    def _flatten(self, source_dir: Path, work_dir: Path) -> None:
        try:
            for entry in source_dir.iterdir():
                target = work_dir / entry.name
                if entry.name == ".git" or target == source_dir:
                    continue
                if target.exists() or target.is_symlink():
                    _remove(target)
                shutil.move(str(entry), str(target))
        finally:
            shutil.rmtree(source_dir, ignore_errors=True)
