"""
Tool configuration and project path resolution.

Defaults point at the production service. A ``config.yaml`` in the
kbsync home overrides them, and a handful of environment variables
override the file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import KBSYNC_HOME

logger = logging.getLogger("kbsync.config")

ENV_OVERRIDES = {
    "KBSYNC_API_URL": "kb_api_url",
    "KBSYNC_AUTH_URL": "auth_api_url",
    "KBSYNC_BUCKET": "bucket",
    "KBSYNC_LOCALSTACK_ENDPOINT": "localstack_endpoint",
    "KBSYNC_MAX_CONCURRENCY": "max_concurrency",
}


class KBSyncConfig(BaseModel):
    """Endpoints, storage constants and transfer tuning."""

    kb_api_url: str = "https://kb.openkbs.com/"
    auth_api_url: str = "https://auth.openkbs.com/"
    icon_url_template: str = "https://file.openkbs.com/kb-image/{kb_id}.png"
    bucket: str = "openkbs-files"
    region: str = "us-east-1"
    localstack_endpoint: str = "http://localhost:4566"
    max_concurrency: int = Field(default=16, ge=0)
    http_timeout: float = Field(default=30.0, gt=0)
    token_path: Path = Path("~/.openkbs/clientJWT")

    def icon_url(self, kb_id: str) -> str:
        """Public URL of a project's icon."""
        return self.icon_url_template.format(kb_id=kb_id)


def load_config(home: Optional[Path] = None) -> KBSyncConfig:
    """Load configuration from ``<home>/config.yaml`` plus the environment.

    Invalid values are dropped one field at a time, so a bad override
    falls back to its default without discarding the rest.

    Args:
        home: kbsync home directory. Defaults to ``KBSYNC_HOME``.

    Returns:
        KBSyncConfig with file and environment overrides applied.
    """
    home_path = (home or Path(KBSYNC_HOME)).expanduser()
    config_file = home_path / "config.yaml"

    data: dict = {}
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            logger.warning("Failed to parse %s: %s", config_file, exc)
            data = {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected a mapping", config_file)
        data = {}

    for env_var, field_name in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            data[field_name] = value

    try:
        return KBSyncConfig(**data)
    except ValidationError as exc:
        bad = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
        logger.warning("Ignoring invalid kbsync config values %s: %s", sorted(bad), exc)

    data = {key: value for key, value in data.items() if key not in bad}
    try:
        return KBSyncConfig(**data)
    except ValidationError as exc:
        logger.warning("Invalid kbsync config, using defaults: %s", exc)
        return KBSyncConfig()


class ProjectPaths:
    """Well-known locations inside a project workspace.

    Args:
        root: Project root directory (the one holding ``app/`` and ``src/``).
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()
        self.app_dir = self.root / "app"
        self.settings = self.app_dir / "settings.json"
        self.instructions = self.app_dir / "instructions.txt"
        self.icon = self.app_dir / "icon.png"
        self.src = self.root / "src"
        self.cache = self.root / "cache"

    def files_root(self, dist: bool) -> Path:
        """Directory holding either built artifacts or hand-written source."""
        return self.cache if dist else self.src
