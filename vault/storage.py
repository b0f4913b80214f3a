import logging
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional, Protocol

import httpx

from .errors import UpstreamVerificationError

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class ObjectState:
    size_bytes: int
    content_type: Optional[str]
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None

class ObjectProbe(Protocol):
    def head(self, url: str) -> ObjectState:
        ...

    def delete(self, url: str) -> None:
        ...

def _last_modified(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("ignoring unparseable last-modified %r", value)
        return None

class HttpObjectStore:
    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def head(self, url: str) -> ObjectState:
        # timeouts and transport errors count as a failed probe
        try:
            with self._client() as client:
                resp = client.head(url)
        except httpx.HTTPError as exc:
            raise UpstreamVerificationError(
                "Unable to verify upload", context={"error": type(exc).__name__}
            ) from exc

        if not resp.is_success:
            raise UpstreamVerificationError(
                f"Unable to verify upload: {resp.status_code}", context={"status": resp.status_code}
            )

        raw_length = resp.headers.get("content-length", "0")
        try:
            size = int(raw_length)
        except ValueError as exc:
            raise UpstreamVerificationError("Unable to verify upload: bad content-length") from exc
        if size < 0:
            raise UpstreamVerificationError(
                "Unable to verify upload: bad content-length", context={"content_length": raw_length}
            )
        return ObjectState(
            size_bytes=size,
            content_type=resp.headers.get("content-type"),
            etag=resp.headers.get("etag"),
            last_modified=_last_modified(resp.headers.get("last-modified")),
        )

    def delete(self, url: str) -> None:
        with self._client() as client:
            resp = client.delete(url)
        resp.raise_for_status()
