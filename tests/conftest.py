"""Shared test fixtures for kbsync."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Optional

import pytest

from kbsync.config import KBSyncConfig
from kbsync.errors import TransferError
from kbsync.sync.backends import TransportBackend
from kbsync.sync.models import Namespace, object_key
from kbsync.sync.reporter import SyncReporter

KB_ID = "kb123"
AES_KEY = "project-aes-key"


class RecordingReporter(SyncReporter):
    """Keeps events in memory, in arrival order. Thread-safe."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def _record(self, kind: str, value: str) -> None:
        with self._lock:
            self.events.append((kind, value))

    def uploading(self, display_name):
        self._record("uploading", display_name)

    def downloading(self, display_name):
        self._record("downloading", display_name)

    def failed(self, display_name, error):
        self._record("failed", display_name)

    def names(self, kind: str) -> list[str]:
        return [value for k, value in self.events if k == kind]


class MemoryBackend(TransportBackend):
    """In-memory object store keyed exactly like the real bucket."""

    def __init__(self, objects: Optional[dict[str, bytes]] = None) -> None:
        self.objects: dict[str, bytes] = dict(objects or {})
        self.fail_on: set[str] = set()
        self.puts: list[tuple[str, str]] = []
        self.gets: list[str] = []

    @property
    def name(self) -> str:
        return "memory"

    def list(self, namespace, kb_id):
        prefix = f"{namespace.value}/{kb_id}/"
        return [key for key in self.objects if key.startswith(prefix)]

    def get(self, namespace, kb_id, file_name):
        self.gets.append(file_name)
        if file_name in self.fail_on:
            raise TransferError("boom")
        return self.objects[object_key(namespace, kb_id, file_name)]

    def put(self, namespace, kb_id, file_name, data):
        if file_name in self.fail_on:
            raise TransferError("boom")
        self.puts.append((namespace.value, file_name))
        self.objects[object_key(namespace, kb_id, file_name)] = data


@pytest.fixture
def config(tmp_path: Path) -> KBSyncConfig:
    """Config that never points at a real token file."""
    return KBSyncConfig(token_path=tmp_path / "no-token", max_concurrency=4)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project workspace with settings, icon and two source files."""
    root = tmp_path / "project"
    (root / "app").mkdir(parents=True)
    (root / "app" / "settings.json").write_text(
        json.dumps(
            {
                "kbId": KB_ID,
                "chatVendor": "openai",
                "model": "gpt-4o",
                "kbTitle": "My Agent",
                "kbDescription": "Does things",
                "inputTools": ["speechToText"],
                "installation": True,
                "userNote": "kept locally",
            },
            indent=2,
        ),
        encoding="utf-8",
    )
    (root / "app" / "instructions.txt").write_text("Be helpful.", encoding="utf-8")
    (root / "app" / "icon.png").write_bytes(b"\x89PNG local icon")

    (root / "src" / "Events").mkdir(parents=True)
    (root / "src" / "Frontend").mkdir(parents=True)
    (root / "src" / "Events" / "onRequest.js").write_text("export const handler = 1;\n")
    (root / "src" / "Frontend" / "contentRender.js").write_text("export const render = 2;\n")
    return root


@pytest.fixture
def memory_backend() -> MemoryBackend:
    """Empty in-memory object store."""
    return MemoryBackend()
