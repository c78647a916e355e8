"""
File maps -- what exists on each side of a sync.

Both builders key their map by logical file name (``src/``-relative,
forward slashes). A name reachable under two namespaces is not
resolved: the entry seen last wins.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from .backends import TransportBackend
from .models import (
    ALL_NAMESPACES,
    FileEntry,
    FileMap,
    Namespace,
    derive_namespace,
    logical_name_from_key,
)

logger = logging.getLogger("kbsync.sync.filemap")


def _put(file_map: FileMap, entry: FileEntry) -> None:
    previous = file_map.get(entry.name)
    if previous is not None and previous.namespace != entry.namespace:
        logger.warning(
            "%s present in both %s and %s, keeping %s",
            entry.name,
            previous.namespace.value,
            entry.namespace.value,
            entry.namespace.value,
        )
    file_map[entry.name] = entry


def build_local_map(
    root: Path,
    namespaces: Iterable[Namespace] = ALL_NAMESPACES,
) -> FileMap:
    """Walk a local tree (``src/`` or ``cache/``) into a file map.

    Args:
        root: Directory to walk. A missing directory yields an empty map.
        namespaces: Only files whose derived namespace is listed are kept.

    Returns:
        FileMap of regular files under ``root``.
    """
    wanted = set(namespaces)
    file_map: FileMap = {}
    if not root.is_dir():
        logger.debug("Local root %s does not exist", root)
        return file_map

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fname in sorted(filenames):
            full_path = Path(dirpath) / fname
            if not full_path.is_file():
                continue
            name = full_path.relative_to(root).as_posix()
            namespace = derive_namespace(name)
            if namespace not in wanted:
                continue
            _put(file_map, FileEntry(name=name, namespace=namespace, local_path=full_path))

    logger.debug("Local map of %s: %d file(s)", root, len(file_map))
    return file_map


def build_remote_map(
    backend: TransportBackend,
    kb_id: str,
    namespaces: Iterable[Namespace] = ALL_NAMESPACES,
) -> FileMap:
    """List each namespace once and flatten the keys into a file map.

    Keys look like ``{namespace}/{kb_id}/{name}``; the first two segments
    are dropped. The namespace the key was listed under is kept for
    routing later transfers.
    """
    file_map: FileMap = {}
    for namespace in namespaces:
        for key in backend.list(namespace, kb_id):
            name = logical_name_from_key(key)
            if not name or name.endswith("/"):
                continue
            _put(file_map, FileEntry(name=name, namespace=namespace, remote_key=key))

    logger.debug("Remote map of %s via %s: %d file(s)", kb_id, backend.name, len(file_map))
    return file_map
