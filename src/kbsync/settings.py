"""
Project settings codec.

Locally a project keeps its settings in ``app/settings.json`` (2-space
JSON) and its instructions in ``app/instructions.txt``. Remotely the
title, description and instructions are stored encrypted with the
project's AES key. This module converts between the two.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import ProjectPaths
from .crypto import decrypt, encrypt
from .errors import ConfigError, CryptoError, FormatError

logger = logging.getLogger("kbsync.settings")

NUMBER_TAG = "__OPENKBS__NUM__"

ENCRYPTED_FIELDS = ("kbTitle", "kbDescription", "kbInstructions", "OpenAIAPIKey")

FieldValue = Union[str, float, None]


class ProjectSettings(BaseModel):
    """The project settings document.

    Keys are camelCase on disk. Keys this model does not know about
    are carried through untouched.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    kb_id: Optional[str] = Field(default=None, alias="kbId")
    chat_vendor: Optional[str] = Field(default=None, alias="chatVendor")
    model: Optional[str] = None
    kb_title: FieldValue = Field(default=None, alias="kbTitle")
    kb_description: FieldValue = Field(default=None, alias="kbDescription")
    kb_instructions: FieldValue = Field(default=None, alias="kbInstructions")
    input_tools: Any = Field(default=None, alias="inputTools")
    installation: Any = None
    item_types: Any = Field(default=None, alias="itemTypes")
    embedding_model: Optional[str] = Field(default=None, alias="embeddingModel")
    embedding_dimension: Optional[int] = Field(default=None, alias="embeddingDimension")
    search_engine: Optional[str] = Field(default=None, alias="searchEngine")

    @property
    def has_embedding(self) -> bool:
        return (
            self.embedding_model is not None
            and self.embedding_dimension is not None
            and self.search_engine is not None
        )


# ---------------------------------------------------------------------------
# Local persistence
# ---------------------------------------------------------------------------


def load_local(paths: ProjectPaths) -> ProjectSettings:
    """Read settings.json and instructions.txt into one document.

    Raises:
        ConfigError: If the project has no settings file or it is not JSON.
    """
    if not paths.settings.exists():
        raise ConfigError(
            f"KB project not found in {paths.root}. "
            "Initialize the project before syncing."
        )

    try:
        data = json.loads(paths.settings.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Malformed {paths.settings}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{paths.settings} must contain a JSON object")

    if paths.instructions.exists():
        data["kbInstructions"] = paths.instructions.read_text(encoding="utf-8")
    else:
        logger.debug("No instructions file at %s", paths.instructions)
        data["kbInstructions"] = ""

    return ProjectSettings.model_validate(data)


def save_local(paths: ProjectPaths, settings: ProjectSettings) -> None:
    """Write settings.json (everything but instructions) and instructions.txt."""
    data = settings.model_dump(by_alias=True, exclude_none=True)
    instructions = data.pop("kbInstructions", "")

    paths.app_dir.mkdir(parents=True, exist_ok=True)
    paths.settings.write_text(
        json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
    )
    paths.instructions.write_text(
        instructions if isinstance(instructions, str) else str(instructions),
        encoding="utf-8",
    )


# ---------------------------------------------------------------------------
# Field encryption
# ---------------------------------------------------------------------------


def decrypt_field(value: Any, key: Optional[str]) -> Any:
    """Decrypt one stored field, tolerating legacy plaintext.

    A decrypted value carrying the number tag is returned as a float.
    Anything that cannot be decrypted is returned unchanged.
    """
    if value is None or not isinstance(value, str):
        return value

    try:
        decrypted = decrypt(value, key) if key else value
    except (FormatError, CryptoError):
        logger.debug("Field left as stored, not decryptable")
        return value

    if decrypted.startswith(NUMBER_TAG):
        try:
            return float(decrypted[len(NUMBER_TAG) :])
        except ValueError:
            return decrypted
    return decrypted


def encrypt_field(value: Any, key: str) -> Optional[str]:
    """Encrypt one field, tagging numbers so they decrypt back to numbers."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return encrypt(f"{NUMBER_TAG}{value}", key)
    return encrypt(str(value), key)


def decrypt_kb_fields(record: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a remote project record with its secrets decrypted."""
    data = dict(record)
    key = record.get("key")
    for field_name in ENCRYPTED_FIELDS:
        if record.get(field_name):
            data[field_name] = decrypt_field(record[field_name], key)
    return data


# ---------------------------------------------------------------------------
# Local <-> remote reconciliation
# ---------------------------------------------------------------------------


def merge_remote(local: ProjectSettings, remote: dict[str, Any]) -> ProjectSettings:
    """Overwrite the synced fields of ``local`` with a decrypted remote record.

    Identity and unknown local keys survive. The embedding settings are
    taken only as a complete set, item types only when present.
    """
    data = local.model_dump(by_alias=True)
    for field_name in (
        "chatVendor",
        "kbDescription",
        "kbInstructions",
        "kbTitle",
        "model",
        "inputTools",
        "installation",
    ):
        data[field_name] = remote.get(field_name)

    if remote.get("embeddingModel") and remote.get("embeddingDimension") and remote.get("searchEngine"):
        data["embeddingModel"] = remote["embeddingModel"]
        data["embeddingDimension"] = remote["embeddingDimension"]
        data["searchEngine"] = remote["searchEngine"]

    if remote.get("itemTypes"):
        data["itemTypes"] = remote["itemTypes"]

    return ProjectSettings.model_validate(data)


def icon_data_uri(icon: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(icon).decode("ascii")


def build_update_payload(
    settings: ProjectSettings,
    key: str,
    icon: Optional[bytes] = None,
) -> dict[str, Any]:
    """Build the body of an ``update`` call for the project record.

    Args:
        settings: Local (plaintext) settings.
        key: The project's AES key from the remote record.
        icon: PNG bytes to replace the icon with, or None to leave it.

    Returns:
        Payload dict without token and action.
    """
    payload: dict[str, Any] = {
        "kbTitle": encrypt_field(settings.kb_title, key),
        "kbDescription": encrypt_field(settings.kb_description, key),
        "kbInstructions": encrypt_field(settings.kb_instructions, key),
        "inputTools": settings.input_tools,
        "installation": settings.installation,
        "chatVendor": settings.chat_vendor,
        "model": settings.model,
        "pwaName": settings.kb_title,
    }
    if icon is not None:
        payload["fileData"] = icon_data_uri(icon)
    if settings.item_types:
        payload["itemTypes"] = settings.item_types
    if settings.has_embedding:
        payload["embeddingModel"] = settings.embedding_model
        payload["embeddingDimension"] = settings.embedding_dimension
        payload["searchEngine"] = settings.search_engine
    return payload
