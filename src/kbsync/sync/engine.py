"""
Sync Engine -- orchestrates settings, icon and file transfers.

This is the command center. It reads the local project, picks the
transport for the requested location, works out which files to move
and drives the transfers.

    kbsync push  ->  update project record (+icon) -> upload src/
    kbsync pull  ->  fetch project record -> icon -> download src/

Files in one batch move concurrently on a bounded thread pool. A
failed file does not stop its siblings and does not undo them; the
first failure is raised once the batch has settled.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Optional, Union

from ..api import KBApiClient, load_client_token
from ..config import KBSyncConfig, ProjectPaths, load_config
from ..errors import (
    AuthExpiredError,
    ConfigError,
    KBSyncError,
    NotFoundError,
    TransferError,
    UnsupportedTargetError,
)
from ..settings import (
    ProjectSettings,
    build_update_payload,
    decrypt_kb_fields,
    load_local,
    merge_remote,
    save_local,
)
from .backends import TransportBackend, create_backend, fetch_bytes
from .filemap import build_local_map, build_remote_map
from .models import (
    ALL_NAMESPACES,
    ICON_FILE,
    INSTRUCTIONS_FILE,
    SETTINGS_FILE,
    FileEntry,
    FileMap,
    Location,
    SyncDirection,
    SyncResult,
    derive_namespace,
    is_dist,
    normalize_name,
)
from .reporter import NullReporter, SyncReporter

logger = logging.getLogger("kbsync.sync.engine")

BackendFactory = Callable[..., TransportBackend]


def select_files(
    file_map: FileMap,
    target_file: Optional[str] = None,
    dist: bool = False,
) -> list[FileEntry]:
    """Pick the working set from a source-side file map.

    With a target, the single entry is returned only if it exists and
    its dist flag matches ``dist``. Without one, every entry of the
    requested kind is returned, sorted by name.

    Raises:
        NotFoundError: If the target is absent or of the other kind.
    """
    if target_file:
        entry = file_map.get(target_file)
        if entry is None or entry.dist != dist:
            raise NotFoundError(target_file)
        return [entry]
    return [file_map[name] for name in sorted(file_map) if file_map[name].dist == dist]


class SyncEngine:
    """Synchronizes one project directory with its remote copy.

    Args:
        project_root: Directory holding ``app/`` and ``src/``.
        config: Tool configuration. Defaults to :func:`load_config`.
        api: Central API client. Built from ``config`` when omitted.
        reporter: Receives per-file status events.
        client_token: Session token. Read from ``config.token_path`` on
            first use when omitted.
        backend_factory: Builds the transport for a location.
    """

    def __init__(
        self,
        project_root: Path,
        config: Optional[KBSyncConfig] = None,
        api: Optional[KBApiClient] = None,
        reporter: Optional[SyncReporter] = None,
        client_token: Optional[str] = None,
        backend_factory: BackendFactory = create_backend,
    ) -> None:
        self.paths = ProjectPaths(project_root)
        self.config = config or load_config()
        self.api = api or KBApiClient(self.config)
        self.reporter = reporter or NullReporter()
        self._client_token = client_token
        self._backend_factory = backend_factory

    # ------------------------------------------------------------------
    # Credentials and backends
    # ------------------------------------------------------------------

    @property
    def client_token(self) -> str:
        if self._client_token is None:
            self._client_token = load_client_token(self.config.token_path)
        return self._client_token

    def _kb_token(self, kb_id: str) -> str:
        return self.api.fetch_kb_token(self.client_token, kb_id)

    def _backend(self, location: Location, kb_id: str, kb_token: Optional[str] = None) -> TransportBackend:
        if location.transport == Location.ORIGIN:
            return self._backend_factory(
                location, self.config, self.api, kb_token or self._kb_token(kb_id)
            )
        return self._backend_factory(location, self.config)

    def _local_settings(self) -> ProjectSettings:
        settings = load_local(self.paths)
        if not settings.kb_id:
            raise ConfigError(
                "No KB found. Push the project first to register it remotely."
            )
        return settings

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull(
        self,
        location: Union[Location, str] = Location.ORIGIN,
        target_file: Optional[str] = None,
        dist: bool = False,
    ) -> SyncResult:
        """Bring remote state into the local project.

        Args:
            location: Where to read files from.
            target_file: Only this file (``./`` and ``src/`` prefixes allowed).
            dist: Transfer built artifacts into ``cache/`` instead of sources.

        Returns:
            SyncResult describing what was written.

        Raises:
            NotFoundError: If ``target_file`` is not available remotely.
        """
        location = Location(location)
        target = normalize_name(target_file) if target_file else None
        dist = dist or location == Location.CACHE

        settings = self._local_settings()
        kb_id = settings.kb_id
        result = SyncResult(direction=SyncDirection.PULL, location=location, kb_id=kb_id)
        logger.info("Pulling KB %s from %s (target=%s, dist=%s)", kb_id, location.value, target, dist)

        if dist:
            result.files = self.pull_files(self._backend(location, kb_id), kb_id, target, dist=True)
            return result

        if target in (SETTINGS_FILE, INSTRUCTIONS_FILE):
            self.pull_settings(settings, self._kb_token(kb_id))
            result.settings = True
        elif target == ICON_FILE:
            self.pull_icon(kb_id)
            result.icon = True
        elif target:
            result.files = self.pull_files(self._backend(location, kb_id), kb_id, target)
        else:
            kb_token = self._kb_token(kb_id)
            self.pull_settings(settings, kb_token)
            result.settings = True
            self.pull_icon(kb_id)
            result.icon = True
            result.files = self.pull_files(self._backend(location, kb_id, kb_token), kb_id)
        return result

    def clone(self, kb_id: str, location: Union[Location, str] = Location.ORIGIN) -> SyncResult:
        """Populate this directory from an existing remote project.

        Raises:
            ConfigError: If the directory already tracks a project.
        """
        location = Location(location)
        if self.paths.settings.exists():
            existing = load_local(self.paths)
            if existing.kb_id:
                raise ConfigError(
                    f"KB {existing.kb_id} already saved in settings.json. "
                    "Use pull to fetch remote changes."
                )
            settings = existing.model_copy(update={"kb_id": kb_id})
        else:
            settings = ProjectSettings(kb_id=kb_id)

        logger.info("Cloning KB %s into %s", kb_id, self.paths.root)
        kb_token = self._kb_token(kb_id)
        self.pull_settings(settings, kb_token)
        self.pull_icon(kb_id)
        files = self.pull_files(self._backend(location, kb_id, kb_token), kb_id)
        return SyncResult(
            direction=SyncDirection.PULL,
            location=location,
            kb_id=kb_id,
            files=files,
            settings=True,
            icon=True,
        )

    def pull_settings(self, settings: ProjectSettings, kb_token: str) -> ProjectSettings:
        """Replace the synced local settings fields with the remote record."""
        record = self.api.get_kb(kb_token)
        merged = merge_remote(settings, decrypt_kb_fields(record.as_dict()))
        save_local(self.paths, merged)
        self.reporter.downloading(SETTINGS_FILE)
        self.reporter.downloading(INSTRUCTIONS_FILE)
        return merged

    def pull_icon(self, kb_id: str) -> None:
        """Download the public project icon into ``app/icon.png``."""
        self.reporter.downloading(ICON_FILE)
        data = fetch_bytes(self.config.icon_url(kb_id), self.config.http_timeout)
        self.paths.app_dir.mkdir(parents=True, exist_ok=True)
        self.paths.icon.write_bytes(data)

    def pull_files(
        self,
        backend: TransportBackend,
        kb_id: str,
        target_file: Optional[str] = None,
        dist: bool = False,
    ) -> list[str]:
        """Download remote files into ``src/`` (or ``cache/`` for dist).

        Nothing is written when ``target_file`` is not found.
        """
        root = self.paths.files_root(dist)
        remote_map = build_remote_map(backend, kb_id, ALL_NAMESPACES)
        entries = select_files(remote_map, target_file, dist)

        def download(entry: FileEntry) -> None:
            local_path = self._local_path(root, entry.name)
            data = backend.get(entry.namespace, kb_id, entry.name)
            local_path.parent.mkdir(parents=True, exist_ok=True)
            self.reporter.downloading(f"{root.name}/{entry.name}")
            local_path.write_bytes(data)

        return self._run_batch(entries, download)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(
        self,
        location: Union[Location, str] = Location.ORIGIN,
        target_file: Optional[str] = None,
        dist: bool = False,
    ) -> SyncResult:
        """Send local state to the remote project.

        Args:
            location: Where to write files to.
            target_file: Only this file (``./`` and ``src/`` prefixes allowed).
            dist: Upload built artifacts from ``cache/`` instead of sources.

        Returns:
            SyncResult describing what was uploaded.

        Raises:
            UnsupportedTargetError: For ``app/icon.png``, which only travels
                with a full project update.
            NotFoundError: If ``target_file`` does not exist locally.
        """
        location = Location(location)
        target = normalize_name(target_file) if target_file else None
        if target == ICON_FILE:
            raise UnsupportedTargetError(
                "app/icon.png is uploaded with the project settings; "
                "push the whole project instead."
            )

        settings = self._local_settings()
        kb_id = settings.kb_id
        result = SyncResult(direction=SyncDirection.PUSH, location=location, kb_id=kb_id)
        logger.info("Pushing KB %s to %s (target=%s, dist=%s)", kb_id, location.value, target, dist)

        if location == Location.CACHE:
            backend = self._backend(location, kb_id)
            if target:
                result.files = self.push_files(backend, kb_id, target, dist=is_dist(target))
            else:
                result.files = self.push_files(backend, kb_id, dist=True)
                result.files += self.push_files(backend, kb_id, dist=False)
            return result

        if dist:
            result.files = self.push_files(self._backend(location, kb_id), kb_id, target, dist=True)
            return result

        if target in (SETTINGS_FILE, INSTRUCTIONS_FILE):
            self.push_settings(settings, self._kb_token(kb_id), with_icon=False)
            result.settings = True
        elif target:
            result.files = self.push_files(self._backend(location, kb_id), kb_id, target)
        else:
            kb_token = self._kb_token(kb_id)
            self.push_settings(settings, kb_token, with_icon=True)
            result.settings = True
            result.icon = True
            result.files = self.push_files(self._backend(location, kb_id, kb_token), kb_id)
        return result

    def push_settings(self, settings: ProjectSettings, kb_token: str, with_icon: bool = True) -> None:
        """Full project update: encrypted settings, optionally with the icon.

        Raises:
            ConfigError: If the remote record has no key or the icon is missing.
        """
        record = self.api.get_kb(kb_token)
        if not record.key:
            raise ConfigError("Remote KB record carries no encryption key")

        icon = None
        if with_icon:
            if not self.paths.icon.exists():
                raise ConfigError("app/icon.png not found")
            icon = self.paths.icon.read_bytes()

        self.reporter.uploading(SETTINGS_FILE)
        self.reporter.uploading(INSTRUCTIONS_FILE)
        if with_icon:
            self.reporter.uploading(ICON_FILE)
        self.api.update_kb(kb_token, build_update_payload(settings, record.key, icon))

    def push_files(
        self,
        backend: TransportBackend,
        kb_id: str,
        target_file: Optional[str] = None,
        dist: bool = False,
    ) -> list[str]:
        """Upload local files from ``src/`` (or ``cache/`` for dist)."""
        local_map = build_local_map(self.paths.files_root(dist), ALL_NAMESPACES)
        entries = select_files(local_map, target_file, dist)

        def upload(entry: FileEntry) -> None:
            data = entry.local_path.read_bytes()
            self.reporter.uploading(entry.name)
            backend.put(entry.namespace, kb_id, entry.name, data)

        return self._run_batch(entries, upload)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_file(self, kb_id: str, file_name: str) -> str:
        """Remove one file from a remote project.

        The namespace is derived from the normalized name, as for uploads.
        Local files are not touched.

        Returns:
            The logical name that was deleted.

        Raises:
            NotFoundError: If the name is empty after normalization.
        """
        name = normalize_name(file_name)
        if not name:
            raise NotFoundError(file_name)
        namespace = derive_namespace(name)
        logger.info("Deleting %s from KB %s (%s)", name, kb_id, namespace.value)
        self.api.delete_file(self._kb_token(kb_id), namespace.value, name)
        return name

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    @staticmethod
    def _local_path(root: Path, name: str) -> Path:
        path = (root / name).resolve()
        if not path.is_relative_to(root.resolve()):
            raise TransferError(f"Refusing to write outside {root}: {name}", name)
        return path

    def _run_batch(
        self,
        entries: list[FileEntry],
        work: Callable[[FileEntry], None],
    ) -> list[str]:
        """Run ``work`` for every entry concurrently and wait for all of them.

        Returns:
            Names of the files transferred, sorted.

        Raises:
            AuthExpiredError: If any transfer hit a 401.
            TransferError: The first other failure, after the batch settled.
        """
        if not entries:
            return []

        workers = min(self.config.max_concurrency or len(entries), len(entries))
        done: list[str] = []
        errors: list[KBSyncError] = []

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kbsync") as pool:
            futures = {pool.submit(work, entry): entry for entry in entries}
            for future in as_completed(futures):
                entry = futures[future]
                try:
                    future.result()
                except AuthExpiredError as exc:
                    errors.append(exc)
                except TransferError as exc:
                    if exc.file_name is None:
                        exc.file_name = entry.name
                        exc.namespace = entry.namespace.value
                    self.reporter.failed(entry.name, exc)
                    errors.append(exc)
                except (KBSyncError, OSError) as exc:
                    err = TransferError(str(exc), entry.name, entry.namespace.value)
                    err.__cause__ = exc
                    self.reporter.failed(entry.name, err)
                    errors.append(err)
                else:
                    done.append(entry.name)

        if errors:
            fatal = next((e for e in errors if isinstance(e, AuthExpiredError)), None)
            logger.error(
                "%d of %d transfer(s) failed; %d completed",
                len(errors),
                len(entries),
                len(done),
            )
            raise fatal or errors[0]

        return sorted(done)
