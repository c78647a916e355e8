"""
Sync transport backends -- how a project file's bytes travel.

Each backend knows how to list, fetch and store the objects of one
project namespace. The engine picks one based on the location.

Origin: the central API hands out presigned URLs, bytes go over plain HTTP.
AWS: direct S3 calls against the production bucket.
LocalStack: the same S3 calls against a local emulator endpoint.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..api import KBApiClient
from ..config import KBSyncConfig
from ..errors import TransferError
from .models import Location, Namespace, object_key

logger = logging.getLogger("kbsync.sync.backends")


def fetch_bytes(
    url: str,
    timeout: float,
    session: Optional[requests.Session] = None,
) -> bytes:
    """GET a URL and return its body.

    Raises:
        TransferError: On network errors or a non-2xx status.
    """
    http = session or requests
    try:
        resp = http.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise TransferError(f"Download failed: {exc}") from exc
    if not 200 <= resp.status_code < 300:
        raise TransferError(f"Failed to download file. Status code: {resp.status_code}")
    return resp.content


class TransportBackend(ABC):
    """Abstract transport for one project's files."""

    @abstractmethod
    def list(self, namespace: Namespace, kb_id: str) -> list[str]:
        """List object keys stored under ``{namespace}/{kb_id}/``.

        Args:
            namespace: Namespace to list.
            kb_id: Project identifier.

        Returns:
            Full object keys.
        """

    @abstractmethod
    def get(self, namespace: Namespace, kb_id: str, file_name: str) -> bytes:
        """Fetch one file's bytes.

        Raises:
            TransferError: If the object cannot be read.
        """

    @abstractmethod
    def put(self, namespace: Namespace, kb_id: str, file_name: str, data: bytes) -> None:
        """Store one file's bytes.

        Raises:
            TransferError: If the object cannot be written.
        """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""


class OriginBackend(TransportBackend):
    """Presigned-URL transport brokered by the central API.

    Args:
        api: Central API client.
        kb_token: Per-project token used for listing and URL signing.
        session: Optional requests session for the presigned GET/PUT.
    """

    def __init__(
        self,
        api: KBApiClient,
        kb_token: str,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api = api
        self.kb_token = kb_token
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return "origin"

    @property
    def _timeout(self) -> float:
        return self.api.config.http_timeout

    def list(self, namespace: Namespace, kb_id: str) -> list[str]:
        objects = self.api.list_files(self.kb_token, namespace.value, kb_id)
        return [obj.key for obj in objects]

    def get(self, namespace: Namespace, kb_id: str, file_name: str) -> bytes:
        url = self.api.create_presigned_url(
            self.kb_token, namespace.value, kb_id, file_name, "getObject"
        )
        try:
            return fetch_bytes(url, self._timeout, self._session)
        except TransferError as exc:
            raise TransferError(str(exc), file_name, namespace.value) from exc

    def put(self, namespace: Namespace, kb_id: str, file_name: str, data: bytes) -> None:
        url = self.api.create_presigned_url(
            self.kb_token, namespace.value, kb_id, file_name, "putObject"
        )
        try:
            resp = self._session.put(url, data=data, timeout=self._timeout)
        except requests.RequestException as exc:
            raise TransferError(
                f"Upload failed: {exc}", file_name, namespace.value
            ) from exc
        if not 200 <= resp.status_code < 300:
            raise TransferError(
                f"Upload failed with status {resp.status_code}",
                file_name,
                namespace.value,
            )


class S3Backend(TransportBackend):
    """Direct object store transport (AWS or LocalStack).

    Args:
        config: Bucket, region and emulator endpoint.
        location: ``Location.AWS`` or ``Location.LOCALSTACK``.
        client: Optional pre-built S3 client (used by tests).
    """

    def __init__(
        self,
        config: KBSyncConfig,
        location: Location = Location.AWS,
        client: Any = None,
    ) -> None:
        self.config = config
        self.location = location
        self.bucket = config.bucket
        self._client = client
        self._client_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.location.value

    @property
    def client(self) -> Any:
        """Lazily created boto3 S3 client with path-style addressing.

        Built once per backend under a lock; batch workers share it.
        """
        with self._client_lock:
            if self._client is None:
                kwargs: dict[str, Any] = {
                    "region_name": self.config.region,
                    "config": BotoConfig(s3={"addressing_style": "path"}),
                }
                if self.location == Location.LOCALSTACK:
                    kwargs["endpoint_url"] = self.config.localstack_endpoint
                self._client = boto3.client("s3", **kwargs)
            return self._client

    def list(self, namespace: Namespace, kb_id: str) -> list[str]:
        prefix = f"{namespace.value}/{kb_id}/"
        keys: list[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(
                f"Listing {prefix} failed: {exc}", namespace=namespace.value
            ) from exc
        return keys

    def get(self, namespace: Namespace, kb_id: str, file_name: str) -> bytes:
        key = object_key(namespace, kb_id, file_name)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(
                f"get_object {key} failed: {exc}", file_name, namespace.value
            ) from exc

    def put(self, namespace: Namespace, kb_id: str, file_name: str, data: bytes) -> None:
        key = object_key(namespace, kb_id, file_name)
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data)
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(
                f"put_object {key} failed: {exc}", file_name, namespace.value
            ) from exc


def create_backend(
    location: Location,
    config: KBSyncConfig,
    api: Optional[KBApiClient] = None,
    kb_token: Optional[str] = None,
) -> TransportBackend:
    """Factory function to create the backend for a location.

    Args:
        location: Requested location (``cache`` uses the AWS transport).
        config: Tool configuration.
        api: Central API client, required for origin.
        kb_token: Per-project token, required for origin.

    Returns:
        Instantiated TransportBackend.

    Raises:
        ValueError: If origin is requested without API credentials.
    """
    transport = location.transport
    if transport == Location.ORIGIN:
        if api is None or not kb_token:
            raise ValueError("Origin backend needs an API client and a project token")
        return OriginBackend(api, kb_token)
    return S3Backend(config, transport)
