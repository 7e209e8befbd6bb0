"""Downloads asset bytes from the remote origin."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import requests

from petcache.config import DEFAULT_ORIGIN_BASE_URL
from petcache.errors import FetchError

LOG = logging.getLogger(__name__)

_DEFAULT_UA = "petcache/1.0"


class OriginFetcher:
    """
    One GET per call, no retries and no timeout beyond the transport default.
    A failed fetch is retried only when a client asks for the asset again.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_ORIGIN_BASE_URL,
        suffix: str = ".swf",
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.suffix = suffix
        self.session = session or requests.Session()
        self.headers = dict(headers or {})
        self.headers.setdefault("User-Agent", _DEFAULT_UA)
        self.headers.setdefault("Accept", "*/*")

    def url_for(self, asset_id: int) -> str:
        return f"{self.base_url}/{int(asset_id)}{self.suffix}"

    def fetch(self, asset_id: int) -> bytes:
        return self.fetch_url(self.url_for(asset_id))

    def fetch_url(self, url: str) -> bytes:
        LOG.info("Fetching %s", url)
        try:
            r = self.session.get(url, headers=self.headers, allow_redirects=True)
        except requests.RequestException as e:
            raise FetchError(url, reason=str(e)) from e

        try:
            if not 200 <= r.status_code < 300:
                raise FetchError(url, status=r.status_code)
            try:
                data = r.content
            except requests.RequestException as e:
                raise FetchError(url, reason=f"reading body failed: {e}") from e
        finally:
            r.close()

        LOG.info("Fetched %d bytes from %s", len(data), url)
        return data
