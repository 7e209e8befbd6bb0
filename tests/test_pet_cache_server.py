import os
import socket
import sys
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from petcache import server as server_mod
from petcache.errors import AssetIdError, FetchError
from petcache.origin import OriginFetcher
from petcache.ports import find_available_port
from petcache.server import PetCacheServer, PortCell

PORT_RANGE = (18103, 18300)

# Talk to the loopback server directly, never through an environment proxy.
HTTP = requests.Session()
HTTP.trust_env = False


class FakeFetcher:
    def __init__(self, payload=b"B", error=None, gate=None):
        self.payload = payload
        self.error = error
        self.gate = gate
        self.entered = threading.Event()
        self.urls = []
        self._lock = threading.Lock()

    def url_for(self, asset_id):
        return f"https://origin.invalid/{asset_id}.swf"

    def fetch(self, asset_id):
        return self.fetch_url(self.url_for(asset_id))

    def fetch_url(self, url):
        with self._lock:
            self.urls.append(url)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.error is not None:
            raise self.error
        return self.payload


@pytest.fixture
def make_server(tmp_path):
    servers = []

    def _make(fetcher=None, cache_dir=None, start=True):
        srv = PetCacheServer(
            cache_dir=str(cache_dir or tmp_path / "pets"),
            port_range=PORT_RANGE,
            fetcher=fetcher if fetcher is not None else FakeFetcher(),
        )
        servers.append(srv)
        if start:
            srv.start()
            assert srv.wait_ready(timeout=5.0), srv.failure
        return srv

    yield _make

    for srv in servers:
        srv.stop()


def _assert_cors(resp):
    assert resp.headers.get("Access-Control-Allow-Origin") == "*"
    assert resp.headers.get("Access-Control-Allow-Methods") == "GET"
    assert resp.headers.get("Access-Control-Allow-Headers") == "content-type"


def test_cold_request_fetches_and_populates_cache(make_server, tmp_path):
    fetcher = FakeFetcher(payload=b"FWS-seven")
    srv = make_server(fetcher)

    resp = HTTP.get(srv.asset_url(7), timeout=5)

    assert resp.status_code == 200
    assert resp.content == b"FWS-seven"
    assert resp.headers["Content-Type"] == "application/x-shockwave-flash"
    _assert_cors(resp)
    assert (tmp_path / "pets" / "7.swf").read_bytes() == b"FWS-seven"
    assert fetcher.urls == ["https://origin.invalid/7.swf"]


def test_repeat_request_is_served_from_cache(make_server):
    fetcher = FakeFetcher(payload=b"once")
    srv = make_server(fetcher)

    first = HTTP.get(srv.asset_url(21), timeout=5)
    second = HTTP.get(srv.asset_url(21), timeout=5)

    assert first.content == second.content == b"once"
    assert len(fetcher.urls) == 1


def test_cached_file_served_even_if_origin_is_down(make_server, tmp_path):
    pets = tmp_path / "pets"
    pets.mkdir()
    (pets / "7.swf").write_bytes(b"C")
    fetcher = FakeFetcher(error=FetchError("https://origin.invalid/7.swf", reason="unreachable"))
    srv = make_server(fetcher)

    resp = HTTP.get(srv.asset_url(7), timeout=5)

    assert resp.status_code == 200
    assert resp.content == b"C"
    assert fetcher.urls == []


def test_origin_500_is_404_and_nothing_is_written(make_server, tmp_path):
    session = MagicMock()
    bad = MagicMock()
    bad.status_code = 500
    bad.content = b"internal error"
    session.get.return_value = bad
    srv = make_server(OriginFetcher("https://origin.invalid/fight", session=session))

    resp = HTTP.get(srv.asset_url(7), timeout=5)

    assert resp.status_code == 404
    _assert_cors(resp)
    assert b"internal error" not in resp.content
    assert not (tmp_path / "pets" / "7.swf").exists()
    assert session.get.call_count == 1


def test_non_numeric_id_touches_neither_disk_nor_network(make_server):
    srv = make_server()
    srv.coordinator.ensure_cached = MagicMock()
    srv.store.read = MagicMock()

    for tail in ("abc.swf", "007.swf", "-1.swf", "7.png", "4294967296.swf", "x/7.swf"):
        resp = HTTP.get(f"{srv.base_url}/cache/pets/{tail}", timeout=5)
        assert resp.status_code == 404, tail
        _assert_cors(resp)

    srv.coordinator.ensure_cached.assert_not_called()
    srv.store.read.assert_not_called()


def test_unknown_path_is_404(make_server):
    srv = make_server()
    resp = HTTP.get(f"{srv.base_url}/cache/other/7.swf", timeout=5)
    assert resp.status_code == 404
    _assert_cors(resp)


def test_cors_preflight(make_server):
    srv = make_server()
    resp = HTTP.options(srv.asset_url(7), headers={"Origin": "http://localhost:1420"}, timeout=5)
    assert resp.status_code == 204
    _assert_cors(resp)


def test_concurrent_cold_requests_trigger_one_fetch(make_server):
    gate = threading.Event()
    fetcher = FakeFetcher(payload=b"x" * 50000, gate=gate)
    srv = make_server(fetcher)
    url = srv.asset_url(314)

    bodies = []
    lock = threading.Lock()

    def worker():
        s = requests.Session()
        s.trust_env = False
        r = s.get(url, timeout=10)
        with lock:
            bodies.append((r.status_code, r.content))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    assert fetcher.entered.wait(timeout=5.0)
    time.sleep(0.3)
    gate.set()
    for t in threads:
        t.join(timeout=10.0)

    assert len(bodies) == 6
    assert all(status == 200 for status, _ in bodies)
    assert {body for _, body in bodies} == {b"x" * 50000}
    assert len(fetcher.urls) == 1


def test_client_disconnect_does_not_cancel_fill(make_server, tmp_path):
    gate = threading.Event()
    fetcher = FakeFetcher(payload=b"warmed" * 1000, gate=gate)
    srv = make_server(fetcher)

    raw = socket.create_connection(("127.0.0.1", srv.get_port()), timeout=5)
    raw.sendall(b"GET /cache/pets/77.swf HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n")
    assert fetcher.entered.wait(timeout=5.0)

    waiter = {}

    def second_client():
        s = requests.Session()
        s.trust_env = False
        r = s.get(srv.asset_url(77), timeout=10)
        waiter["status"] = r.status_code
        waiter["body"] = r.content

    t = threading.Thread(target=second_client)
    t.start()
    time.sleep(0.3)

    raw.close()
    gate.set()
    t.join(timeout=10.0)

    assert waiter.get("status") == 200
    assert waiter.get("body") == b"warmed" * 1000
    assert (tmp_path / "pets" / "77.swf").read_bytes() == b"warmed" * 1000
    assert len(fetcher.urls) == 1


def test_listens_on_loopback_inside_range(make_server):
    srv = make_server()
    port = srv.get_port()
    assert PORT_RANGE[0] <= port < PORT_RANGE[1]
    assert srv.base_url == f"http://127.0.0.1:{port}"


def test_port_absent_before_start(make_server):
    srv = make_server(start=False)
    assert srv.get_port() is None
    with pytest.raises(RuntimeError):
        _ = srv.base_url


def test_no_free_port_is_logged_not_raised(tmp_path):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    busy = sock.getsockname()[1]
    try:
        srv = PetCacheServer(str(tmp_path / "pets"), port_range=(busy, busy + 1), fetcher=FakeFetcher())
        srv.start()
        assert srv.wait_for_port(timeout=5.0) is None
        assert srv.get_port() is None
        assert "no free port" in str(srv.failure)
    finally:
        sock.close()


def test_uncreatable_cache_root_keeps_port_absent(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_bytes(b"")
    srv = PetCacheServer(str(blocker / "pets"), port_range=PORT_RANGE, fetcher=FakeFetcher())
    srv.start()

    assert srv.wait_for_port(timeout=5.0) is None
    assert srv.failure is not None


def test_stop_during_startup_never_serves(tmp_path, monkeypatch):
    srv = PetCacheServer(str(tmp_path / "pets"), port_range=PORT_RANGE, fetcher=FakeFetcher())
    chosen = []

    def stop_then_pick(start, end, host):
        srv.stop()
        port = find_available_port(start, end, host)
        chosen.append(port)
        return port

    monkeypatch.setattr(server_mod, "find_available_port", stop_then_pick)
    srv.start()

    assert srv.wait_for_port(timeout=5.0) is None
    srv._thread.join(timeout=5.0)
    assert not srv._thread.is_alive()
    assert chosen and chosen[0] is not None
    with pytest.raises(ConnectionRefusedError):
        socket.create_connection(("127.0.0.1", chosen[0]), timeout=2).close()


def test_port_cell_is_single_assignment():
    cell = PortCell()
    assert cell.get() is None
    assert cell.wait(timeout=0.01) is None
    cell.set(8103)
    assert cell.get() == 8103
    with pytest.raises(RuntimeError):
        cell.set(8104)
    assert cell.get() == 8103


def test_prefetch_downloads_from_given_url(make_server, tmp_path):
    fetcher = FakeFetcher(payload=b"warm")
    srv = make_server(fetcher, start=False)

    msg = srv.prefetch(55, "https://mirror.invalid/55.swf")

    assert msg.startswith("downloaded: ")
    assert fetcher.urls == ["https://mirror.invalid/55.swf"]
    assert (tmp_path / "pets" / "55.swf").read_bytes() == b"warm"


def test_prefetch_existing_file_skips_network(make_server, tmp_path):
    pets = tmp_path / "pets"
    pets.mkdir()
    (pets / "55.swf").write_bytes(b"old")
    fetcher = FakeFetcher()
    srv = make_server(fetcher, start=False)

    msg = srv.prefetch(55, "https://mirror.invalid/55.swf")

    assert msg == f"already cached: {os.path.join(str(pets), '55.swf')}"
    assert fetcher.urls == []


def test_prefetch_failure_raises_with_message(make_server):
    fetcher = FakeFetcher(error=FetchError("https://mirror.invalid/1.swf", status=404))
    srv = make_server(fetcher, start=False)

    with pytest.raises(FetchError) as ei:
        srv.prefetch(1, "https://mirror.invalid/1.swf")
    assert "HTTP 404" in str(ei.value)


def test_prefetch_rejects_invalid_id(make_server):
    srv = make_server(start=False)
    with pytest.raises(AssetIdError):
        srv.prefetch(-1, "https://mirror.invalid/x.swf")
    with pytest.raises(AssetIdError):
        srv.prefetch(2 ** 32, "https://mirror.invalid/x.swf")


def test_module_get_port_without_server(monkeypatch):
    monkeypatch.setattr(server_mod, "_SERVER_SINGLETON", None)
    assert server_mod.get_port() is None
