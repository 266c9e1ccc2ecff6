from typing import Any, Optional

from pydantic import BaseModel, Field

from core.schemas import utc_now_iso


def envelope(data: Any = None, message: Optional[str] = None) -> dict:
    body = {"success": True, "data": data, "timestamp": utc_now_iso()}
    if message:
        body["message"] = message
    return body


def error_body(message: str, code: str, details: Optional[dict] = None) -> dict:
    body = {"success": False, "error": message, "code": code, "timestamp": utc_now_iso()}
    if details:
        body["details"] = details
    return body


class DeployRequest(BaseModel):
    force: bool = False


class Repository(BaseModel):
    name: str
    clone_url: str
    ssh_url: Optional[str] = None
    html_url: Optional[str] = None


class PushEvent(BaseModel):
    ref: str
    repository: Repository
    after: Optional[str] = Field(None, description="The commit hash")

    @property
    def branch(self) -> Optional[str]:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else None
