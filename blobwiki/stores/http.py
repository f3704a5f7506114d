"""
HTTP client for an S3-compatible object store.

Objects are addressed path-style as ``{endpoint}/{bucket}/{key}``:

- user metadata travels in ``x-amz-meta-*`` headers (values percent-encoded)
- version tokens are the ``ETag`` header, quotes stripped
- conditional writes use ``If-Match`` / ``If-None-Match: *``
- listing uses ListObjectsV2 and follows continuation tokens

Request signing belongs to the identity collaborator: pass an
``httpx.Auth`` (for example a SigV4 signer fed with short-lived
credentials) or a bearer ``token``.

Errors are reported as ``StoreError`` with the S3 error code from the
response body when present, else a code derived from the HTTP status.
Timeouts and connection failures become ``StoreError('TimeoutError')`` and
``StoreError('NetworkingError')``; retrying is the caller's business.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Optional, Union
from urllib.parse import quote, unquote

import httpx

from ..protocol import ObjectHead, StoreError, StoredObject

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
META_PREFIX = "x-amz-meta-"

_STATUS_CODES = {
    400: "InvalidRequest",
    401: "InvalidAccessKeyId",
    403: "AccessDenied",
    404: "NoSuchKey",
    408: "RequestTimeout",
    412: "PreconditionFailed",
    413: "EntityTooLarge",
    429: "SlowDown",
    500: "InternalError",
    502: "ServiceUnavailable",
    503: "ServiceUnavailable",
    504: "RequestTimeout",
}


def _strip_etag(etag: Optional[str]) -> str:
    return (etag or "").strip('"')


def _error_from_response(resp: httpx.Response) -> StoreError:
    """Build a StoreError from an S3 XML error body or the status code."""
    code = None
    message = ""
    if resp.content:
        try:
            root = ET.fromstring(resp.content)
            code = root.findtext("{*}Code") or root.findtext("Code")
            message = root.findtext("{*}Message") or root.findtext("Message") or ""
        except ET.ParseError:
            message = resp.text[:200]
    if not code:
        code = _STATUS_CODES.get(resp.status_code)
        if code is None:
            code = "InternalError" if resp.status_code >= 500 else "InvalidRequest"
    return StoreError(code, message or f"HTTP {resp.status_code}", status=resp.status_code)


class HttpObjectStore:
    """``ObjectStoreProtocol`` over httpx.AsyncClient."""

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        *,
        token: Optional[str] = None,
        auth: Optional[httpx.Auth] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not endpoint:
            raise ValueError("Object store endpoint is required")
        if not bucket:
            raise ValueError("Object store bucket is required")
        self._endpoint = endpoint.rstrip("/")
        self._bucket = bucket

        # Refuse non-HTTPS for remote stores when a bearer token is attached
        if token and not self._endpoint.startswith("https://"):
            from urllib.parse import urlparse
            host = urlparse(self._endpoint).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Object store endpoint must use HTTPS when a token is set (got {self._endpoint})"
                )

        headers: dict[str, str] = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=f"{self._endpoint}/{self._bucket}",
            headers=headers,
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return f"{self._endpoint}/{self._bucket}"

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{quote(key)}"

    def _path(self, key: str) -> str:
        return "/" + quote(key)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise StoreError("TimeoutError", f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise StoreError("NetworkingError", f"{method} {url} failed: {e}") from e
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        return resp

    @staticmethod
    def _metadata(headers: httpx.Headers) -> dict[str, str]:
        return {
            name[len(META_PREFIX):]: unquote(value)
            for name, value in headers.items()
            if name.lower().startswith(META_PREFIX)
        }

    async def get(self, key: str) -> StoredObject:
        resp = await self._send("GET", self._path(key))
        return StoredObject(
            key=key,
            body=resp.content,
            version_token=_strip_etag(resp.headers.get("etag")),
            metadata=self._metadata(resp.headers),
            content_type=resp.headers.get("content-type"),
            last_modified=resp.headers.get("last-modified"),
        )

    async def put(
        self,
        key: str,
        body: Union[bytes, str],
        *,
        metadata: Optional[dict[str, str]] = None,
        content_type: Optional[str] = None,
        if_match: Optional[str] = None,
        if_none_match: bool = False,
    ) -> str:
        if isinstance(body, str):
            body = body.encode("utf-8")
        headers = {"Content-Type": content_type or "application/octet-stream"}
        for name, value in (metadata or {}).items():
            headers[f"{META_PREFIX}{name}"] = quote(value, safe=" ,:-_.")
        if if_match is not None:
            headers["If-Match"] = f'"{if_match}"'
        if if_none_match:
            headers["If-None-Match"] = "*"
        resp = await self._send("PUT", self._path(key), content=body, headers=headers)
        return _strip_etag(resp.headers.get("etag"))

    async def delete(self, key: str) -> None:
        try:
            await self._send("DELETE", self._path(key))
        except StoreError as e:
            # 404 is fine: already gone
            if e.code != "NoSuchKey":
                raise

    async def list(self, prefix: str = "", delimiter: Optional[str] = None) -> list[str]:
        keys: list[str] = []
        continuation: Optional[str] = None
        while True:
            params = {"list-type": "2", "prefix": prefix}
            if delimiter:
                params["delimiter"] = delimiter
            if continuation:
                params["continuation-token"] = continuation
            resp = await self._send("GET", "/", params=params)
            try:
                root = ET.fromstring(resp.content)
            except ET.ParseError as e:
                raise StoreError("InternalError", f"Unparseable listing: {e}") from e
            for contents in root.iter("{*}Contents"):
                key = contents.findtext("{*}Key")
                if key:
                    keys.append(key)
            truncated = (root.findtext("{*}IsTruncated") or "false").lower() == "true"
            continuation = root.findtext("{*}NextContinuationToken")
            if not truncated or not continuation:
                break
            logger.debug("Listing %r continues after %d keys", prefix, len(keys))
        return sorted(keys)

    async def head(self, key: str) -> ObjectHead:
        resp = await self._send("HEAD", self._path(key))
        return ObjectHead(
            key=key,
            version_token=_strip_etag(resp.headers.get("etag")),
            metadata=self._metadata(resp.headers),
            content_type=resp.headers.get("content-type"),
            size=int(resp.headers.get("content-length") or 0),
            last_modified=resp.headers.get("last-modified"),
        )

    async def close(self) -> None:
        await self._client.aclose()
