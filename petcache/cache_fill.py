"""
Single-flight cache filling.

Concurrent misses for the same asset id share one origin fetch: the first
caller registers a Future in the in-flight table and does the work, later
callers wait on that Future. The table entry is removed when the fill finishes
(successfully or not), so the next cold request starts a fresh attempt.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Dict, Optional

from petcache.asset_store import AssetStore
from petcache.errors import CacheIOError, FetchError
from petcache.origin import OriginFetcher

LOG = logging.getLogger(__name__)


class CacheFillCoordinator:
    def __init__(self, store: AssetStore, fetcher: OriginFetcher):
        self.store = store
        self.fetcher = fetcher
        self._in_flight: Dict[int, Future] = {}
        # Guards the table only; nobody holds it while fetching or writing.
        self._lock = threading.Lock()

    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def ensure_cached(self, asset_id: int, url: Optional[str] = None) -> str:
        """
        Return the cache path for ``asset_id``, fetching it first if needed.

        ``url`` overrides the origin URL for this fill. Raises FetchError or
        CacheIOError if this fill (or the fill we waited on) failed.
        """
        asset_id = int(asset_id)
        if self.store.exists(asset_id):
            return self.store.path_for(asset_id)

        with self._lock:
            pending = self._in_flight.get(asset_id)
            if pending is None:
                if self.store.exists(asset_id):
                    return self.store.path_for(asset_id)
                pending = Future()
                self._in_flight[asset_id] = pending
                owner = True
            else:
                owner = False

        if not owner:
            LOG.debug("Waiting for in-flight fetch of asset %s", asset_id)
            # Raises the owner's exception if its fill failed.
            path = pending.result()
            if not self.store.exists(asset_id):
                raise CacheIOError(path, "cache entry vanished after fill")
            return path

        try:
            path = self._fill(asset_id, url)
        except BaseException as e:
            pending.set_exception(e)
            raise
        else:
            pending.set_result(path)
            return path
        finally:
            with self._lock:
                self._in_flight.pop(asset_id, None)

    def _fill(self, asset_id: int, url: Optional[str]) -> str:
        try:
            if url:
                data = self.fetcher.fetch_url(url)
            else:
                data = self.fetcher.fetch(asset_id)
        except FetchError as e:
            LOG.warning("Fetching asset %s failed: %s", asset_id, e)
            raise

        try:
            path = self.store.write(asset_id, data)
        except CacheIOError as e:
            LOG.error("Caching asset %s failed: %s", asset_id, e)
            raise

        LOG.info("Cached asset %s (%d bytes) at %s", asset_id, len(data), path)
        return path
