"""
HTTP client for the memex sync API.

The uploader calls ``upsert`` and ``delete`` once per attempt; retry and
backoff live in the sync queue, not here. Both calls are idempotent on
the server, so re-sending after a crash or a lost response is safe.

Endpoints::

    PUT    /v1/{namespace}/{id}   body: record JSON
    DELETE /v1/{namespace}/{id}   404 counts as already deleted
    GET    /v1/{namespace}        -> {"records": [...]}
"""

from __future__ import annotations

import logging
from urllib.parse import quote, urlparse

import httpx

from .errors import SyncError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
FETCH_TIMEOUT = 60.0

# Client errors worth retrying: timeout and rate limiting
_RETRYABLE_4XX = (408, 429)


def _check_url(api_url: str) -> None:
    # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
    if api_url.startswith("https://"):
        return
    host = urlparse(api_url).hostname or ""
    if host not in ("localhost", "127.0.0.1", "::1"):
        raise ValueError(
            f"Sync API URL must use HTTPS (got {api_url}). "
            "Use HTTPS to protect API credentials, or use localhost for local development."
        )


def _raise_for_status(resp: httpx.Response, action: str) -> None:
    if resp.is_success:
        return
    status = resp.status_code
    retryable = status >= 500 or status in _RETRYABLE_4XX
    raise SyncError(f"{action} failed: {status} {resp.text[:200]}", retryable=retryable)


class HttpRemote:
    """Remote sync target backed by the memex HTTP API."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._api_url = api_url.rstrip("/")
        _check_url(self._api_url)

        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.Client(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
        )

    @property
    def api_url(self) -> str:
        return self._api_url

    @staticmethod
    def _path(namespace: str, id: str | None = None) -> str:
        path = f"/v1/{quote(namespace, safe='')}"
        if id is not None:
            path += f"/{quote(id, safe='')}"
        return path

    def upsert(self, namespace: str, id: str, payload: dict) -> None:
        """PUT the full record. Raises SyncError on failure."""
        try:
            resp = self._client.put(self._path(namespace, id), json=payload)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise SyncError(f"Upsert {namespace}/{id} failed: {e}") from e
        _raise_for_status(resp, f"Upsert {namespace}/{id}")
        logger.debug("Upserted %s/%s", namespace, id)

    def delete(self, namespace: str, id: str) -> None:
        """DELETE a record. Already-gone records count as deleted."""
        try:
            resp = self._client.delete(self._path(namespace, id))
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise SyncError(f"Delete {namespace}/{id} failed: {e}") from e
        if resp.status_code == 404:
            logger.debug("Delete %s/%s: already gone", namespace, id)
            return
        _raise_for_status(resp, f"Delete {namespace}/{id}")
        logger.debug("Deleted %s/%s", namespace, id)

    def fetch(self, namespace: str) -> list[dict]:
        """GET every record in a namespace."""
        try:
            resp = self._client.get(self._path(namespace), timeout=FETCH_TIMEOUT)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise SyncError(f"Fetch {namespace} failed: {e}") from e
        if resp.status_code == 404:
            return []
        _raise_for_status(resp, f"Fetch {namespace}")
        try:
            data = resp.json()
        except ValueError as e:
            raise SyncError(f"Fetch {namespace}: invalid JSON") from e
        records = data.get("records", []) if isinstance(data, dict) else data
        if not isinstance(records, list):
            raise SyncError(f"Fetch {namespace}: expected a list of records")
        return [r for r in records if isinstance(r, dict) and r.get("id")]

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()


class NullRemote:
    """Remote that accepts everything. Used when sync is not configured."""

    def upsert(self, namespace: str, id: str, payload: dict) -> None:
        pass

    def delete(self, namespace: str, id: str) -> None:
        pass

    def fetch(self, namespace: str) -> list[dict]:
        return []

    def close(self) -> None:
        pass
