"""
Project sync -- move a KB project between disk and its object store.

Backends: origin (presigned URLs via the central API), AWS S3, LocalStack.
The caller picks the pipe. The engine decides what travels.
"""

from .engine import SyncEngine
from .models import Location, Namespace, SyncDirection, derive_namespace, is_dist

__all__ = [
    "Location",
    "Namespace",
    "SyncDirection",
    "SyncEngine",
    "derive_namespace",
    "is_dist",
]
