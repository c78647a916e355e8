"""Tests for console status reporting."""

from __future__ import annotations

import io
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from conftest import KB_ID, MemoryBackend
from kbsync.errors import TransferError
from kbsync.sync.engine import SyncEngine
from kbsync.sync.reporter import RichReporter


@pytest.fixture
def output() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def reporter(output) -> RichReporter:
    return RichReporter(Console(file=output, width=200, color_system=None))


class TestRichReporter:
    def test_uploading(self, reporter, output):
        reporter.uploading("Events/onRequest.js")
        assert output.getvalue() == "Uploading: Events/onRequest.js\n"

    @pytest.mark.parametrize(
        "name",
        ["Frontend/pages/[id].js", "Frontend/pages/[bold]/[id].js", "src/Frontend/a[/x].js"],
    )
    def test_bracketed_names_printed_verbatim(self, reporter, output, name):
        reporter.uploading(name)
        reporter.downloading(name)
        assert output.getvalue() == f"Uploading: {name}\nDownloading: {name}\n"

    def test_failed_escapes_error_text(self, reporter, output):
        reporter.failed("Frontend/[slug].js", TransferError("bad key [/x]"))
        assert output.getvalue() == "Failed: Frontend/[slug].js (bad key [/x])\n"


def test_pull_of_bracketed_names(tmp_path, config, reporter, output):
    remote = MemoryBackend(
        {
            f"frontend/{KB_ID}/Frontend/pages/[id].js": b"page",
            f"frontend/{KB_ID}/Frontend/a[/x].js": b"odd",
        }
    )
    engine = SyncEngine(tmp_path, config=config, api=MagicMock(), reporter=reporter, client_token="client")

    assert engine.pull_files(remote, KB_ID) == ["Frontend/a[/x].js", "Frontend/pages/[id].js"]

    assert (tmp_path / "src" / "Frontend" / "pages" / "[id].js").read_bytes() == b"page"
    assert "Downloading: src/Frontend/pages/[id].js" in output.getvalue()
    assert "Downloading: src/Frontend/a[/x].js" in output.getvalue()
