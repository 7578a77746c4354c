"""Core data models for the deploy agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


RELEASE_PREFIX = "build-"
CURRENT_LINK = "current"
NEXT_LINK = "next"
SHARED_DIR = "shared"
LOCK_FILE = ".deploy.lock"


class Target(BaseModel):
    """A deployment destination, looked up by repository id."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    repository: str = Field(..., min_length=1, description="Repository identifier (case-insensitive)")
    secret: str = Field(..., min_length=1, description="Shared HMAC secret")
    base_dir: Path = Field(..., alias="baseDir", description="Root of the release tree")

    @field_validator("repository")
    @classmethod
    def strip_repository(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("repository must not be blank")
        return v

    @field_validator("base_dir")
    @classmethod
    def absolute_base_dir(cls, v: Path) -> Path:
        return v.expanduser().absolute()

    @property
    def key(self) -> str:
        return self.repository.lower()

    @property
    def shared_secret(self) -> bytes:
        return self.secret.encode("utf-8")

    @property
    def shared_dir(self) -> Path:
        return self.base_dir / SHARED_DIR

    @property
    def current_link(self) -> Path:
        return self.base_dir / CURRENT_LINK

    @property
    def next_link(self) -> Path:
        return self.base_dir / NEXT_LINK

    @property
    def lock_path(self) -> Path:
        return self.base_dir / LOCK_FILE

    def release_dir(self, run_id: str) -> Path:
        return self.base_dir / f"{RELEASE_PREFIX}{run_id}"

    def __repr__(self) -> str:
        return f"Target(repository={self.repository!r}, base_dir={str(self.base_dir)!r})"


class Command(BaseModel):
    """A single hook command from the release manifest."""

    model_config = ConfigDict(extra="ignore")

    command: str
    cwd: Optional[str] = Field(None, description="Working directory relative to the target root")


class SharedConfig(BaseModel):
    """Files and directories that live in the target's shared directory."""

    model_config = ConfigDict(extra="ignore")

    files: Optional[List[str]] = None
    dirs: Optional[List[str]] = None


class ReleaseManifest(BaseModel):
    """Per-release deploy manifest (deploy.yaml)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    shared: Optional[SharedConfig] = None
    pre_publish: Optional[List[Command]] = Field(None, alias="prePublish")
    post_publish: Optional[List[Command]] = Field(None, alias="postPublish")


@dataclass
class CommandResult:
    """Transcript and outcome of running a list of commands."""

    lines: List[str] = field(default_factory=list)
    success: bool = True

    @property
    def out(self) -> str:
        return "\n".join(self.lines)


class DeployState(str, Enum):
    AUTHENTICATING = "authenticating"
    EXTRACTING = "extracting"
    CONFIG_LOADING = "config_loading"
    LINKING_SHARED = "linking_shared"
    PRE_PUBLISHING = "pre_publishing"
    PROMOTING = "promoting"
    POST_PUBLISHING = "post_publishing"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


class DeployRecord(BaseModel):
    """State of a single deploy attempt."""

    repository: str
    run_id: str
    release_dir: str
    state: DeployState = DeployState.AUTHENTICATING
    previous_dir: Optional[str] = None
    error: Optional[str] = None
    out: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def update_state(self, state: DeployState, error: Optional[str] = None) -> None:
        self.state = state
        self.updated_at = datetime.now(timezone.utc)
        if error:
            self.error = error


class DeployResponse(BaseModel):
    out: str
