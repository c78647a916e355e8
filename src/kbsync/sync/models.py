"""
Sync data models -- namespaces, locations and file map entries.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

FRONTEND_PREFIX = "Frontend/"
DIST_PREFIXES = ("Events/dist", "Frontend/dist")

SETTINGS_FILE = "app/settings.json"
INSTRUCTIONS_FILE = "app/instructions.txt"
ICON_FILE = "app/icon.png"


class Namespace(str, Enum):
    """Logical partition of a project's source tree."""

    FUNCTIONS = "functions"
    FRONTEND = "frontend"


ALL_NAMESPACES = (Namespace.FUNCTIONS, Namespace.FRONTEND)


class Location(str, Enum):
    """Where remote bytes live and how they are reached."""

    ORIGIN = "origin"
    AWS = "aws"
    LOCALSTACK = "localstack"
    CACHE = "cache"

    @property
    def transport(self) -> "Location":
        """Backend that actually moves the bytes (cache goes straight to S3)."""
        return Location.AWS if self is Location.CACHE else self


class SyncDirection(str, Enum):
    """Sync operation direction."""

    PUSH = "push"
    PULL = "pull"


def normalize_name(file_name: str) -> str:
    """Turn a user-supplied path into a logical file name.

    Backslashes become slashes, then a leading ``./`` and a leading
    ``src/`` are stripped, in that order.
    """
    name = file_name.replace("\\", "/")
    if name.startswith("./"):
        name = name[2:]
    if name.startswith("src/"):
        name = name[4:]
    return name


def derive_namespace(file_name: str) -> Namespace:
    """``Frontend/...`` belongs to frontend, everything else to functions."""
    if normalize_name(file_name).startswith(FRONTEND_PREFIX):
        return Namespace.FRONTEND
    return Namespace.FUNCTIONS


def is_dist(file_name: str) -> bool:
    """Whether a logical name points at a built artifact."""
    return normalize_name(file_name).startswith(DIST_PREFIXES)


def object_key(namespace: Namespace, kb_id: str, file_name: str) -> str:
    """Object store key of a project file."""
    return f"{namespace.value}/{kb_id}/{file_name}"


def logical_name_from_key(key: str) -> str:
    """Drop the ``{namespace}/{kbId}/`` prefix of an object key."""
    return "/".join(key.split("/")[2:])


class FileEntry(BaseModel):
    """One file on one side of a sync.

    ``local_path`` is set for files found on disk, ``remote_key`` for
    files listed in the object store.
    """

    name: str
    namespace: Namespace
    local_path: Optional[Path] = None
    remote_key: Optional[str] = None

    @property
    def dist(self) -> bool:
        return is_dist(self.name)


FileMap = dict[str, FileEntry]


class SyncResult(BaseModel):
    """Outcome of one push or pull."""

    direction: SyncDirection
    location: Location
    kb_id: str
    files: list[str] = Field(default_factory=list)
    settings: bool = False
    icon: bool = False

    @property
    def count(self) -> int:
        return len(self.files)
