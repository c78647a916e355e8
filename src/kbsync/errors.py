"""
Error taxonomy shared by the sync engine, transports and codecs.

Every failure the CLI knows how to report derives from KBSyncError.
"""

from __future__ import annotations

from typing import Optional


class KBSyncError(Exception):
    """Base class for all kbsync failures."""


class AuthExpiredError(KBSyncError):
    """The central API rejected the session (HTTP 401). Fatal."""

    def __init__(self, message: str = "Session expired") -> None:
        super().__init__(message)


class ConfigError(KBSyncError):
    """Local project settings are missing or unusable."""


class NotFoundError(KBSyncError):
    """A requested file is absent on the relevant side."""

    def __init__(self, file_name: str) -> None:
        super().__init__(f"Invalid path {file_name}")
        self.file_name = file_name


class UnsupportedTargetError(KBSyncError):
    """The requested single-file operation has to go through another command."""


class FormatError(KBSyncError):
    """A cipher blob is not in the salted format."""


class CryptoError(KBSyncError):
    """Decryption failed: wrong passphrase or corrupted ciphertext."""


class TransferError(KBSyncError):
    """A single file transfer failed.

    Args:
        message: What went wrong.
        file_name: Logical name of the file, when known.
        namespace: Namespace the file was routed to, when known.
    """

    def __init__(
        self,
        message: str,
        file_name: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.file_name = file_name
        self.namespace = namespace


class ApiError(TransferError):
    """The central API answered with an error or an unexpected shape."""
