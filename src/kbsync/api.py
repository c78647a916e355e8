"""
Central KB API client.

Every call is a JSON POST carrying a session or project token and an
``action``. Responses are narrowed to explicit types here so the rest
of the package never handles raw JSON of unknown shape.

A 401 from any endpoint means the session is gone; that is raised as
AuthExpiredError and ends the whole command.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import KBSyncConfig
from .errors import ApiError, AuthExpiredError, ConfigError

logger = logging.getLogger("kbsync.api")


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


class RemoteObject(BaseModel):
    """One entry of a ``listFiles`` response (S3 object summary)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: str = Field(alias="Key")
    size: Optional[int] = Field(default=None, alias="Size")
    last_modified: Optional[str] = Field(default=None, alias="LastModified")


class KBRecord(BaseModel):
    """The remote project record returned by ``getKB``.

    Only the fields the sync needs are declared; the rest ride along.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    kb_id: Optional[str] = Field(default=None, alias="kbId")
    key: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _error_message(resp: requests.Response) -> str:
    """Server-supplied error text of a failed response, if any."""
    try:
        body = resp.json()
    except ValueError:
        logger.debug("Error response without JSON body (%s)", resp.status_code)
        return "Invalid Request"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return "Invalid Request"


# ---------------------------------------------------------------------------
# Session token
# ---------------------------------------------------------------------------


def load_client_token(path: Path) -> str:
    """Read the stored session JWT and reject it if already expired.

    Args:
        path: Location of the token file.

    Returns:
        The raw JWT string.

    Raises:
        ConfigError: If no token is stored.
        AuthExpiredError: If the token's ``exp`` claim has passed.
    """
    token_file = Path(path).expanduser()
    if not token_file.exists():
        raise ConfigError("Not logged in. Log in to OpenKBS first.")

    token = token_file.read_text(encoding="utf-8").strip()
    parts = token.split(".")
    if len(parts) != 3:
        raise ConfigError(f"Malformed session token in {token_file}")

    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError) as exc:
        raise ConfigError(f"Malformed session token in {token_file}") from exc

    exp = claims.get("exp") if isinstance(claims, dict) else None
    if exp is None:
        return token
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise ConfigError(f"Session token in {token_file} has a non-numeric exp claim")
    if exp < time.time():
        raise AuthExpiredError("Session expired. Please log in again.")
    return token


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class KBApiClient:
    """Thin client for the KB and auth endpoints.

    Args:
        config: Endpoint configuration.
        session: Optional pre-built requests session (used by tests).
    """

    def __init__(
        self,
        config: KBSyncConfig,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self._session = session or requests.Session()

    def _post(self, url: str, payload: dict[str, Any]) -> Any:
        """POST JSON and return the decoded body.

        Raises:
            AuthExpiredError: On HTTP 401.
            ApiError: On any other non-2xx status, network error or non-JSON body.
        """
        action = payload.get("action", url)
        try:
            resp = self._session.post(url, json=payload, timeout=self.config.http_timeout)
        except requests.RequestException as exc:
            raise ApiError(f"{action} request failed: {exc}") from exc

        if resp.status_code == 401:
            raise AuthExpiredError(
                "It appears you are not logged in. Please log in again."
            )

        if not 200 <= resp.status_code < 300:
            raise ApiError(f"{action} failed ({resp.status_code}): {_error_message(resp)}")

        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError(f"{action} returned a non-JSON body") from exc

    def _kb_call(self, token: str, action: str, **fields: Any) -> Any:
        payload = {"token": token, "action": action}
        payload.update({k: v for k, v in fields.items() if v is not None})
        body = self._post(self.config.kb_api_url, payload)
        if isinstance(body, dict) and body.get("error"):
            raise ApiError(f"{action} failed: {body['error']}")
        return body

    def fetch_kb_token(self, client_token: str, kb_id: str) -> str:
        """Exchange the session token for a per-project token.

        Raises:
            ConfigError: If the project does not exist remotely.
        """
        body = self._post(
            self.config.auth_api_url + "fetchKBJWT",
            {"token": client_token, "kbId": kb_id},
        )
        kb_token = body.get("kbToken") if isinstance(body, dict) else None
        if not kb_token:
            raise ConfigError(f"KB {kb_id} does not exist on the remote service")
        return kb_token

    def list_files(self, kb_token: str, namespace: str, kb_id: str) -> list[RemoteObject]:
        """List the objects stored for a project under one namespace."""
        body = self._kb_call(kb_token, "listFiles", namespace=namespace, kbId=kb_id)
        if not isinstance(body, list):
            raise ApiError(f"listFiles returned {type(body).__name__}, expected a list")
        try:
            return [RemoteObject.model_validate(item) for item in body]
        except ValidationError as exc:
            raise ApiError(f"listFiles returned malformed entries: {exc}") from exc

    def create_presigned_url(
        self,
        kb_token: str,
        namespace: str,
        kb_id: str,
        file_name: str,
        operation: str,
    ) -> str:
        """Obtain a short-lived URL for ``getObject`` or ``putObject``."""
        body = self._kb_call(
            kb_token,
            "createPresignedURL",
            namespace=namespace,
            kbId=kb_id,
            fileName=file_name,
            presignedOperation=operation,
        )
        if not isinstance(body, str) or not body:
            raise ApiError("createPresignedURL did not return a URL")
        return body

    def get_kb(self, kb_token: str) -> KBRecord:
        """Fetch the (encrypted) project record."""
        body = self._kb_call(kb_token, "getKB")
        if not isinstance(body, dict):
            raise ApiError("getKB did not return an object")
        return KBRecord.model_validate(body)

    def update_kb(self, kb_token: str, payload: dict[str, Any]) -> Any:
        """Replace the project record fields in ``payload``."""
        logger.debug("Updating KB record fields: %s", sorted(payload))
        return self._kb_call(kb_token, "update", **payload)

    def delete_file(self, kb_token: str, namespace: str, file_name: str) -> Any:
        """Remove one stored project file from a namespace."""
        logger.debug("Deleting %s/%s", namespace, file_name)
        return self._kb_call(kb_token, "deleteKBFile", namespace=namespace, fileName=file_name)
