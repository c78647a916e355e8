"""
Tests for the sync engine -- working sets, settings, icon and batches.
"""

from __future__ import annotations

import json
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from conftest import AES_KEY, KB_ID, MemoryBackend, RecordingReporter
from kbsync.api import KBRecord
from kbsync.crypto import decrypt, encrypt
from kbsync.errors import (
    AuthExpiredError,
    ConfigError,
    NotFoundError,
    TransferError,
    UnsupportedTargetError,
)
from kbsync.sync.engine import SyncEngine, select_files
from kbsync.sync.models import FileEntry, Location, Namespace, SyncDirection

REMOTE_FILES = {
    f"functions/{KB_ID}/Events/onRequest.js": b"remote handler",
    f"functions/{KB_ID}/Events/lib/util.js": b"remote util",
    f"frontend/{KB_ID}/Frontend/contentRender.js": b"remote render",
}


@pytest.fixture
def api() -> MagicMock:
    """Central API double serving one encrypted project record."""
    mock = MagicMock()
    mock.fetch_kb_token.return_value = "kbtok"
    mock.get_kb.return_value = KBRecord(
        kbId=KB_ID,
        key=AES_KEY,
        kbTitle=encrypt("Remote Title", AES_KEY),
        kbDescription=encrypt("Remote description", AES_KEY),
        kbInstructions=encrypt("Remote instructions", AES_KEY),
        chatVendor="anthropic",
        model="claude",
        inputTools=[],
        installation=False,
    )
    return mock


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


def _engine(project, config, api, backend, reporter) -> SyncEngine:
    return SyncEngine(
        project,
        config=config,
        api=api,
        reporter=reporter,
        client_token="client",
        backend_factory=lambda *args, **kwargs: backend,
    )


class TestSelectFiles:
    """Working set selection."""

    @pytest.fixture
    def file_map(self):
        names = ["Events/a.js", "Frontend/b.js", "Events/dist/a/index.js"]
        return {n: FileEntry(name=n, namespace=Namespace.FUNCTIONS) for n in names}

    def test_sources_only(self, file_map):
        assert [e.name for e in select_files(file_map)] == ["Events/a.js", "Frontend/b.js"]

    def test_dist_only(self, file_map):
        assert [e.name for e in select_files(file_map, dist=True)] == ["Events/dist/a/index.js"]

    def test_single_target(self, file_map):
        assert [e.name for e in select_files(file_map, "Frontend/b.js")] == ["Frontend/b.js"]

    def test_target_of_wrong_kind(self, file_map):
        with pytest.raises(NotFoundError):
            select_files(file_map, "Events/dist/a/index.js", dist=False)

    def test_missing_target(self, file_map):
        with pytest.raises(NotFoundError):
            select_files(file_map, "Events/missing.js")


class TestPush:
    """Local -> remote."""

    def test_full_push_uploads_both_namespaces(self, project, config, api, memory_backend, reporter):
        engine = _engine(project, config, api, memory_backend, reporter)

        result = engine.push()

        assert result.direction == SyncDirection.PUSH
        assert result.files == ["Events/onRequest.js", "Frontend/contentRender.js"]
        assert sorted(memory_backend.puts) == [
            ("frontend", "Frontend/contentRender.js"),
            ("functions", "Events/onRequest.js"),
        ]
        assert memory_backend.objects[f"functions/{KB_ID}/Events/onRequest.js"] == b"export const handler = 1;\n"

    def test_full_push_updates_settings_with_icon(self, project, config, api, memory_backend, reporter):
        engine = _engine(project, config, api, memory_backend, reporter)

        result = engine.push()

        assert result.settings and result.icon
        token, payload = api.update_kb.call_args[0]
        assert token == "kbtok"
        assert decrypt(payload["kbTitle"], AES_KEY) == "My Agent"
        assert decrypt(payload["kbInstructions"], AES_KEY) == "Be helpful."
        assert payload["fileData"].startswith("data:image/png;base64,")
        assert "app/icon.png" in reporter.names("uploading")

    def test_single_file_with_prefixes(self, project, config, api, memory_backend, reporter):
        engine = _engine(project, config, api, memory_backend, reporter)

        result = engine.push(Location.ORIGIN, "./src/Frontend/contentRender.js")

        assert result.files == ["Frontend/contentRender.js"]
        assert memory_backend.puts == [("frontend", "Frontend/contentRender.js")]
        api.update_kb.assert_not_called()

    def test_missing_file_is_not_found(self, project, config, api, memory_backend, reporter):
        engine = _engine(project, config, api, memory_backend, reporter)

        with pytest.raises(NotFoundError):
            engine.push(Location.ORIGIN, "Events/missing.js")
        assert memory_backend.puts == []

    def test_icon_push_is_refused(self, project, config, api, memory_backend, reporter):
        engine = _engine(project, config, api, memory_backend, reporter)

        with pytest.raises(UnsupportedTargetError):
            engine.push(Location.ORIGIN, "app/icon.png")
        api.update_kb.assert_not_called()

    @pytest.mark.parametrize("target", ["app/settings.json", "./app/instructions.txt"])
    def test_settings_push_without_icon(self, project, config, api, memory_backend, reporter, target):
        engine = _engine(project, config, api, memory_backend, reporter)

        result = engine.push(Location.ORIGIN, target)

        assert result.settings and not result.icon
        _, payload = api.update_kb.call_args[0]
        assert "fileData" not in payload
        assert memory_backend.puts == []

    def test_missing_icon_is_config_error(self, project, config, api, memory_backend, reporter):
        (project / "app" / "icon.png").unlink()
        engine = _engine(project, config, api, memory_backend, reporter)

        with pytest.raises(ConfigError):
            engine.push()

    def test_dist_and_source_never_mixed(self, project, config, api, memory_backend, reporter):
        dist_dir = project / "cache" / "Events" / "dist" / "onRequest"
        dist_dir.mkdir(parents=True)
        (dist_dir / "index.js").write_text("built")
        engine = _engine(project, config, api, memory_backend, reporter)

        result = engine.push(Location.AWS, dist=True)

        assert result.files == ["Events/dist/onRequest/index.js"]
        assert memory_backend.puts == [("functions", "Events/dist/onRequest/index.js")]
        api.update_kb.assert_not_called()

    def test_cache_location_pushes_dist_then_sources(self, project, config, api, memory_backend, reporter):
        dist_dir = project / "cache" / "Frontend" / "dist"
        dist_dir.mkdir(parents=True)
        (dist_dir / "contentRender.js").write_text("bundle")
        engine = _engine(project, config, api, memory_backend, reporter)

        result = engine.push(Location.CACHE)

        assert result.files == [
            "Frontend/dist/contentRender.js",
            "Events/onRequest.js",
            "Frontend/contentRender.js",
        ]
        api.fetch_kb_token.assert_not_called()
        api.update_kb.assert_not_called()

    def test_without_kb_id_is_config_error(self, project, config, api, memory_backend, reporter):
        settings_file = project / "app" / "settings.json"
        data = json.loads(settings_file.read_text())
        del data["kbId"]
        settings_file.write_text(json.dumps(data))
        engine = _engine(project, config, api, memory_backend, reporter)

        with pytest.raises(ConfigError):
            engine.push()


class TestPull:
    """Remote -> local."""

    @pytest.fixture
    def remote(self) -> MemoryBackend:
        return MemoryBackend(REMOTE_FILES)

    @patch("kbsync.sync.engine.fetch_bytes", return_value=b"remote icon")
    def test_full_pull(self, mock_fetch, project, config, api, remote, reporter):
        engine = _engine(project, config, api, remote, reporter)

        result = engine.pull()

        assert result.settings and result.icon
        assert result.files == [
            "Events/lib/util.js",
            "Events/onRequest.js",
            "Frontend/contentRender.js",
        ]
        src = project / "src"
        assert (src / "Events" / "onRequest.js").read_bytes() == b"remote handler"
        assert (src / "Events" / "lib" / "util.js").read_bytes() == b"remote util"
        assert (src / "Frontend" / "contentRender.js").read_bytes() == b"remote render"
        assert (project / "app" / "icon.png").read_bytes() == b"remote icon"
        assert mock_fetch.call_args[0][0] == f"https://file.openkbs.com/kb-image/{KB_ID}.png"

    @patch("kbsync.sync.engine.fetch_bytes", return_value=b"remote icon")
    def test_full_pull_decrypts_settings(self, mock_fetch, project, config, api, remote, reporter):
        engine = _engine(project, config, api, remote, reporter)

        engine.pull()

        data = json.loads((project / "app" / "settings.json").read_text())
        assert data["kbTitle"] == "Remote Title"
        assert data["kbDescription"] == "Remote description"
        assert data["model"] == "claude"
        assert data["kbId"] == KB_ID
        assert data["userNote"] == "kept locally"
        assert "key" not in data
        assert (project / "app" / "instructions.txt").read_text() == "Remote instructions"
        assert "src/Events/onRequest.js" in reporter.names("downloading")

    @patch("kbsync.sync.engine.fetch_bytes", return_value=b"remote icon")
    def test_pull_twice_is_idempotent(self, mock_fetch, project, config, api, remote, reporter):
        engine = _engine(project, config, api, remote, reporter)

        engine.pull()
        first = {p: p.read_bytes() for p in project.rglob("*") if p.is_file()}
        engine.pull()
        second = {p: p.read_bytes() for p in project.rglob("*") if p.is_file()}

        assert first == second

    def test_single_file(self, project, config, api, remote, reporter):
        engine = _engine(project, config, api, remote, reporter)

        result = engine.pull(Location.ORIGIN, "src/Events/lib/util.js")

        assert result.files == ["Events/lib/util.js"]
        assert remote.gets == ["Events/lib/util.js"]
        assert (project / "src" / "Events" / "onRequest.js").read_text() == "export const handler = 1;\n"
        api.get_kb.assert_not_called()

    def test_dist_target_missing_writes_nothing(self, project, config, api, remote, reporter):
        engine = _engine(project, config, api, remote, reporter)

        with pytest.raises(NotFoundError):
            engine.pull(Location.ORIGIN, "Events/dist/onRequest/index.js", dist=True)

        assert not (project / "cache").exists()
        assert remote.gets == []

    def test_cache_location_pulls_dist_into_cache(self, project, config, api, reporter):
        remote = MemoryBackend(
            {
                **REMOTE_FILES,
                f"functions/{KB_ID}/Events/dist/onRequest/index.js": b"built",
            }
        )
        engine = _engine(project, config, api, remote, reporter)

        result = engine.pull(Location.CACHE)

        assert result.files == ["Events/dist/onRequest/index.js"]
        assert (project / "cache" / "Events" / "dist" / "onRequest" / "index.js").read_bytes() == b"built"
        assert not (project / "src" / "Events" / "dist").exists()
        api.get_kb.assert_not_called()

    def test_settings_target(self, project, config, api, remote, reporter):
        engine = _engine(project, config, api, remote, reporter)

        result = engine.pull(Location.ORIGIN, "app/settings.json")

        assert result.settings and result.files == []
        assert (project / "app" / "instructions.txt").read_text() == "Remote instructions"
        assert remote.gets == []

    @patch("kbsync.sync.engine.fetch_bytes", return_value=b"icon only")
    def test_icon_target(self, mock_fetch, project, config, api, remote, reporter):
        engine = _engine(project, config, api, remote, reporter)

        result = engine.pull(Location.ORIGIN, "app/icon.png")

        assert result.icon and not result.settings
        assert (project / "app" / "icon.png").read_bytes() == b"icon only"
        api.get_kb.assert_not_called()

    def test_refuses_paths_outside_root(self, project, config, api, reporter):
        remote = MemoryBackend({f"functions/{KB_ID}/../../escape.js": b"evil"})
        engine = _engine(project, config, api, remote, reporter)

        with pytest.raises(TransferError):
            engine.pull(Location.AWS, "../../escape.js")
        assert not (project.parent / "escape.js").exists()


class TestBatch:
    """Concurrent execution and failure propagation."""

    def test_failure_does_not_stop_siblings(self, project, config, api, memory_backend, reporter):
        memory_backend.fail_on = {"Events/onRequest.js"}
        engine = _engine(project, config, api, memory_backend, reporter)

        with pytest.raises(TransferError) as excinfo:
            engine.push_files(memory_backend, KB_ID)

        assert excinfo.value.file_name == "Events/onRequest.js"
        assert excinfo.value.namespace == "functions"
        assert memory_backend.puts == [("frontend", "Frontend/contentRender.js")]
        assert reporter.names("failed") == ["Events/onRequest.js"]

    def test_completed_downloads_are_kept(self, project, config, api, reporter):
        remote = MemoryBackend(REMOTE_FILES)
        remote.fail_on = {"Frontend/contentRender.js"}
        engine = _engine(project, config, api, remote, reporter)

        with pytest.raises(TransferError):
            engine.pull_files(remote, KB_ID)

        assert (project / "src" / "Events" / "onRequest.js").read_bytes() == b"remote handler"
        assert (project / "src" / "Frontend" / "contentRender.js").read_text() == "export const render = 2;\n"

    def test_auth_expiry_wins_over_transfer_errors(self, project, config, api, memory_backend, reporter):
        memory_backend.put = MagicMock(side_effect=AuthExpiredError())
        engine = _engine(project, config, api, memory_backend, reporter)

        with pytest.raises(AuthExpiredError):
            engine.push_files(memory_backend, KB_ID)

    def test_os_errors_become_transfer_errors(self, project, config, api, memory_backend, reporter):
        memory_backend.put = MagicMock(side_effect=[OSError("disk"), None])
        engine = _engine(project, config, api, memory_backend, reporter)

        with pytest.raises(TransferError):
            engine.push_files(memory_backend, KB_ID)

    def test_unbounded_concurrency(self, project, config, api, memory_backend, reporter):
        config.max_concurrency = 0
        engine = _engine(project, config, api, memory_backend, reporter)

        assert engine.push_files(memory_backend, KB_ID) == [
            "Events/onRequest.js",
            "Frontend/contentRender.js",
        ]

    def test_batch_transfers_overlap(self, project, config, api, memory_backend, reporter):
        barrier = threading.Barrier(2, timeout=5)
        store = memory_backend.put

        def put(*args):
            barrier.wait()
            store(*args)

        memory_backend.put = put
        engine = _engine(project, config, api, memory_backend, reporter)

        assert engine.push_files(memory_backend, KB_ID) == [
            "Events/onRequest.js",
            "Frontend/contentRender.js",
        ]

    def test_max_concurrency_bounds_in_flight(self, project, config, api, memory_backend, reporter):
        for i in range(6):
            (project / "src" / "Events" / f"job{i}.js").write_text(str(i))
        config.max_concurrency = 2
        lock = threading.Lock()
        in_flight = 0
        peak = 0
        store = memory_backend.put

        def put(*args):
            nonlocal in_flight, peak
            with lock:
                in_flight += 1
                peak = max(peak, in_flight)
            time.sleep(0.05)
            with lock:
                in_flight -= 1
            store(*args)

        memory_backend.put = put
        engine = _engine(project, config, api, memory_backend, reporter)

        assert len(engine.push_files(memory_backend, KB_ID)) == 8
        assert peak == 2

    def test_empty_batch(self, tmp_path, config, api, memory_backend, reporter):
        engine = _engine(tmp_path, config, api, memory_backend, reporter)
        assert engine.push_files(memory_backend, KB_ID) == []


class TestClone:
    """Populating a fresh directory."""

    @patch("kbsync.sync.engine.fetch_bytes", return_value=b"icon")
    def test_clone_into_empty_dir(self, mock_fetch, tmp_path, config, api, reporter):
        remote = MemoryBackend(REMOTE_FILES)
        target = tmp_path / "fresh"
        engine = _engine(target, config, api, remote, reporter)

        result = engine.clone(KB_ID)

        assert result.count == 3
        data = json.loads((target / "app" / "settings.json").read_text())
        assert data["kbId"] == KB_ID
        assert data["kbTitle"] == "Remote Title"
        assert (target / "app" / "icon.png").read_bytes() == b"icon"
        assert (target / "src" / "Frontend" / "contentRender.js").read_bytes() == b"remote render"

    def test_clone_refuses_tracked_project(self, project, config, api, memory_backend, reporter):
        engine = _engine(project, config, api, memory_backend, reporter)

        with pytest.raises(ConfigError):
            engine.clone("other")
        api.fetch_kb_token.assert_not_called()


class TestDelete:
    """Removing a single remote file."""

    @pytest.mark.parametrize(
        "given, name, namespace",
        [
            ("Events/old.js", "Events/old.js", "functions"),
            ("./src/Frontend/old.js", "Frontend/old.js", "frontend"),
            ("src/Events/dist/x/index.js", "Events/dist/x/index.js", "functions"),
        ],
    )
    def test_routes_by_namespace(self, tmp_path, config, api, memory_backend, reporter, given, name, namespace):
        engine = _engine(tmp_path, config, api, memory_backend, reporter)

        assert engine.delete_file("kb999", given) == name

        api.fetch_kb_token.assert_called_once_with("client", "kb999")
        api.delete_file.assert_called_once_with("kbtok", namespace, name)

    def test_empty_name(self, tmp_path, config, api, memory_backend, reporter):
        engine = _engine(tmp_path, config, api, memory_backend, reporter)

        with pytest.raises(NotFoundError):
            engine.delete_file("kb999", "./src/")
        api.delete_file.assert_not_called()

    def test_local_copy_untouched(self, project, config, api, memory_backend, reporter):
        engine = _engine(project, config, api, memory_backend, reporter)

        engine.delete_file(KB_ID, "Events/onRequest.js")

        assert (project / "src" / "Events" / "onRequest.js").exists()
