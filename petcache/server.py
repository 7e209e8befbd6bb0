"""
Loopback HTTP server that serves cached pet SWF files.

GET /cache/pets/<id>.swf answers from the local cache directory. On a miss the
file is downloaded from the origin once (see CacheFillCoordinator), stored, and
then served. Every failure is a plain 404 for the client; details go to the log.

Design notes:
- The server runs on a background thread started once by the host application.
  Startup problems (no free port, cache directory not creatable) are logged and
  kept in `failure`; they never raise into the host.
- The bound port is published through a PortCell so the host can read it from
  any thread.
- Provides a /health endpoint so callers can reliably wait for startup.
"""

from __future__ import annotations

import logging
import threading
import time
import traceback
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Optional, Tuple, Union
from urllib.parse import urlparse

from petcache.asset_store import MAX_ASSET_ID, AssetStore, parse_asset_filename
from petcache.cache_fill import CacheFillCoordinator
from petcache.config import DEFAULT_ORIGIN_BASE_URL, ConfigManager
from petcache.errors import AssetIdError, PetCacheError
from petcache.origin import OriginFetcher
from petcache.ports import DEFAULT_PORT_RANGE, find_available_port

LOG = logging.getLogger(__name__)

ROUTE_PREFIX = "/cache/pets/"
SWF_CONTENT_TYPE = "application/x-shockwave-flash"

CORS_HEADERS = (
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Methods", "GET"),
    ("Access-Control-Allow-Headers", "content-type"),
)


class _ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    # The port was probed as free; do not let SO_REUSEADDR hide a real conflict.
    allow_reuse_address = False
    request_queue_size = 256


class PortCell:
    """A port number that is published once and then read by anyone."""

    def __init__(self):
        self._value: Optional[int] = None
        self._event = threading.Event()
        self._lock = threading.Lock()

    def set(self, port: int) -> None:
        with self._lock:
            if self._event.is_set():
                raise RuntimeError(f"port already published ({self._value})")
            self._value = int(port)
            self._event.set()

    def get(self) -> Optional[int]:
        if self._event.is_set():
            return self._value
        return None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        self._event.wait(timeout)
        return self.get()


class PetCacheServer:
    def __init__(
        self,
        cache_dir: str,
        origin_base_url: str = DEFAULT_ORIGIN_BASE_URL,
        port_range: Tuple[int, int] = DEFAULT_PORT_RANGE,
        host: str = "127.0.0.1",
        fetcher: Optional[OriginFetcher] = None,
        extension: str = "swf",
        debug_logs: bool = False,
    ):
        self.store = AssetStore(cache_dir, extension=extension)
        self.fetcher = fetcher or OriginFetcher(origin_base_url, suffix="." + extension)
        self.coordinator = CacheFillCoordinator(self.store, self.fetcher)
        self.port_range = (int(port_range[0]), int(port_range[1]))
        self.debug_logs = bool(debug_logs)
        self.failure: Optional[Union[BaseException, str]] = None

        self._host = host
        self._port = PortCell()
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._started = False
        self._stopping = False
        # Set once startup either published a port or gave up.
        self._startup_done = threading.Event()
        self._lock = threading.RLock()

    @property
    def host(self) -> str:
        return self._host

    def _make_handler(self):
        cache = self

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def log_message(self, fmt: str, *args) -> None:
                level = logging.INFO if cache.debug_logs else logging.DEBUG
                LOG.log(level, "PetCacheServer: " + fmt, *args)

            def end_headers(self) -> None:
                for k, v in CORS_HEADERS:
                    self.send_header(k, v)
                super().end_headers()

            def _send_body(self, status: int, content_type: str, body: bytes) -> None:
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                try:
                    self.wfile.write(body)
                except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError) as e:
                    LOG.debug("Client went away before the response was sent: %s", e)

            def do_OPTIONS(self) -> None:
                self.send_response(204)
                self.send_header("Content-Length", "0")
                self.end_headers()

            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path == "/health":
                    self._send_body(200, "text/plain; charset=utf-8", b"ok")
                    return
                if not parsed.path.startswith(ROUTE_PREFIX):
                    self.send_error(404, "Not Found")
                    return

                tail = parsed.path[len(ROUTE_PREFIX):]
                asset_id = None
                if "/" not in tail:
                    asset_id = parse_asset_filename(tail, cache.store.extension)
                if asset_id is None:
                    self.send_error(404, "Not Found")
                    return

                try:
                    cache.coordinator.ensure_cached(asset_id)
                    data = cache.store.read(asset_id)
                except PetCacheError as e:
                    # Already logged where it happened; the client only sees 404.
                    LOG.debug("Asset %s not served: %s", asset_id, e)
                    self.send_error(404, "Not Found")
                    return

                self._send_body(200, SWF_CONTENT_TYPE, data)

        return Handler

    def start(self) -> None:
        """Start the background server thread. Only the first call has an effect."""
        with self._lock:
            if self._started:
                return
            self._started = True
            self._thread = threading.Thread(target=self._run, name="PetCacheServer", daemon=True)
            self._thread.start()

    def _give_up(self, reason: Union[BaseException, str]) -> None:
        self.failure = reason
        LOG.error("Pet cache server not started: %s", reason)
        self._startup_done.set()

    def _run(self) -> None:
        try:
            try:
                self.store.ensure_root()
            except PetCacheError as e:
                self._give_up(e)
                return

            start, end = self.port_range
            port = find_available_port(start, end, self._host)
            if port is None:
                self._give_up(f"no free port in {start}-{end - 1}")
                return

            try:
                httpd = _ThreadingHTTPServer((self._host, port), self._make_handler())
            except OSError as e:
                self._give_up(e)
                return

            with self._lock:
                if self._stopping:
                    httpd.server_close()
                    LOG.info("Pet cache server stopped before it started listening")
                    return
                self._server = httpd
            self._port.set(port)
            self._startup_done.set()
            LOG.info("Pet cache server listening on http://%s:%s%s (cache: %s)",
                     self._host, port, ROUTE_PREFIX, self.store.root)

            httpd.serve_forever(poll_interval=0.25)
        except Exception as e:
            self.failure = e
            LOG.warning("Pet cache server error: %s\n%s", e, traceback.format_exc())
        finally:
            self._startup_done.set()

    def stop(self) -> None:
        with self._lock:
            self._stopping = True
            httpd = self._server
            self._server = None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()

    def get_port(self) -> Optional[int]:
        return self._port.get()

    def wait_for_port(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until startup has finished (or ``timeout``); return the port or None."""
        self._startup_done.wait(timeout)
        return self._port.get()

    def wait_ready(self, timeout: float = 2.0) -> bool:
        import http.client
        deadline = time.time() + max(0.1, float(timeout))
        port = self.wait_for_port(timeout)
        if port is None:
            return False
        while time.time() < deadline:
            conn = http.client.HTTPConnection(self._host, port, timeout=0.5)
            try:
                conn.request("GET", "/health")
                resp = conn.getresponse()
                resp.read()
                if resp.status == 200:
                    return True
            except OSError:
                pass
            finally:
                conn.close()
            time.sleep(0.05)
        return False

    @property
    def base_url(self) -> str:
        port = self.get_port()
        if port is None:
            raise RuntimeError("PetCacheServer not started")
        return f"http://{self._host}:{port}"

    def asset_url(self, asset_id: int) -> str:
        return f"{self.base_url}{ROUTE_PREFIX}{self.store.filename_for(asset_id)}"

    def prefetch(self, asset_id: int, remote_url: str) -> str:
        """
        Make sure ``asset_id`` is cached, downloading it from ``remote_url``.

        Returns a short description of what happened. Raises PetCacheError with
        a readable message on failure. Does not need the HTTP listener.
        """
        try:
            asset_id = int(asset_id)
        except (TypeError, ValueError) as e:
            raise AssetIdError(f"invalid asset id: {asset_id!r}") from e
        if not 0 <= asset_id <= MAX_ASSET_ID:
            raise AssetIdError(f"invalid asset id: {asset_id}")

        path = self.store.path_for(asset_id)
        if self.store.exists(asset_id):
            return f"already cached: {path}"

        self.store.ensure_root()
        LOG.info("Prefetching asset %s from %s", asset_id, remote_url)
        path = self.coordinator.ensure_cached(asset_id, url=remote_url)
        return f"downloaded: {path}"


_SERVER_SINGLETON: Optional[PetCacheServer] = None
_SINGLETON_LOCK = threading.Lock()


def server_from_config(config: ConfigManager) -> PetCacheServer:
    extension = "swf"
    fetcher = OriginFetcher(
        str(config.get("origin_base_url") or DEFAULT_ORIGIN_BASE_URL),
        suffix=str(config.get("origin_suffix") or "." + extension),
        headers={"User-Agent": str(config.get("user_agent") or "petcache/1.0")},
    )
    return PetCacheServer(
        cache_dir=config.cache_dir(),
        port_range=config.port_range(),
        host=str(config.get("host") or "127.0.0.1"),
        fetcher=fetcher,
        extension=extension,
        debug_logs=bool(config.get("debug_logs", False)),
    )


def get_cache_server(config: Optional[ConfigManager] = None) -> PetCacheServer:
    """Return the process-wide server, creating and starting it on first use."""
    global _SERVER_SINGLETON
    with _SINGLETON_LOCK:
        if _SERVER_SINGLETON is None:
            _SERVER_SINGLETON = server_from_config(config or ConfigManager())
            _SERVER_SINGLETON.start()
        return _SERVER_SINGLETON


def get_port() -> Optional[int]:
    """Port of the process-wide server, or None if it is not (yet) listening."""
    with _SINGLETON_LOCK:
        server = _SERVER_SINGLETON
    if server is None:
        return None
    return server.get_port()
