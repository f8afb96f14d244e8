from __future__ import annotations

import http.client
import json
import socket

import pytest
import requests

from errors import BindConflict, InvalidPayload, NoData, TransportFailure
from relay_client import RelayClient
from relay_server import RelayServer
from relay_state import RelayState
from resolver import Candidate
from sync_driver import SyncDriver

A = "2025-11-28T21:00:00.000Z"
B = "2025-11-28T21:00:02.000Z"
X = "2025-11-28T20:30:00.000Z"


@pytest.fixture
def server(clock):
    srv = RelayServer(RelayState(clock=clock), host="127.0.0.1")
    srv.start(0)
    yield srv
    srv.stop()


@pytest.fixture
def url(server) -> str:
    return f"http://127.0.0.1:{server.port}"


@pytest.fixture
def client(server) -> RelayClient:
    return RelayClient(server.port, host="127.0.0.1", timeout=2.0)


def test_ping_without_data_is_404(url: str) -> None:
    r = requests.get(url + "/ping", timeout=2)
    assert r.status_code == 404
    assert r.json() == {"error": "No timestamp data found"}
    assert r.headers["Access-Control-Allow-Origin"] == "*"


def test_update_then_ping_echoes_record(url: str) -> None:
    r = requests.post(url + "/update", json={"gmt": A, "videoId": "v1", "isLive": False}, timeout=2)
    assert r.status_code == 200
    assert r.json() == {"success": True, "received": A}

    r = requests.get(url + "/ping/", timeout=2)
    assert r.status_code == 200
    assert r.json() == {"gmt": A, "videoId": "v1", "isLive": False}


def test_chunked_update_is_buffered_before_parsing(server: RelayServer, url: str) -> None:
    conn = http.client.HTTPConnection("127.0.0.1", server.port, timeout=2)
    try:
        conn.request("POST", "/update",
                     body=iter([b'{"gmt":', b' "2025-01-01T00:00:00.000Z",', b' "videoId": "v1"}']),
                     headers={"Content-Type": "application/json"},
                     encode_chunked=True)
        resp = conn.getresponse()
        assert resp.status == 200
        assert json.loads(resp.read()) == {"success": True, "received": "2025-01-01T00:00:00.000Z"}
    finally:
        conn.close()

    assert requests.get(url + "/ping", timeout=2).json()["videoId"] == "v1"


def test_broken_chunked_framing_is_400(server: RelayServer) -> None:
    with socket.create_connection(("127.0.0.1", server.port), timeout=2) as sock:
        sock.sendall(b"POST /update HTTP/1.1\r\nHost: x\r\n"
                     b"Transfer-Encoding: chunked\r\n\r\nzz\r\n{}\r\n0\r\n\r\n")
        head = sock.recv(4096)
    assert head.startswith(b"HTTP/1.0 400") or head.startswith(b"HTTP/1.1 400")


def test_ping_warns_when_stale(url: str, clock) -> None:
    requests.post(url + "/update", json={"gmt": A}, timeout=2)
    clock.advance(11)

    body = requests.get(url + "/ping", timeout=2).json()
    assert "11" in body["warning"]
    assert body["gmt"] == A


@pytest.mark.parametrize(
    "payload",
    [b"{not json", b'{"gmt": "2025-11-28"}', b'{"other": 1}', b"[1, 2]", b""],
)
def test_bad_updates_are_400(url: str, payload: bytes) -> None:
    r = requests.post(url + "/update", data=payload,
                      headers={"Content-Type": "application/json"}, timeout=2)
    assert r.status_code == 400
    assert "error" in r.json()


def test_redirect_round_trip_is_one_shot(url: str) -> None:
    r = requests.post(url + "/redirect", json={"timestamp": X}, timeout=2)
    assert r.json() == {"success": True, "redirect": X}

    first = requests.post(url + "/update", json={"gmt": A}, timeout=2).json()
    second = requests.post(url + "/update", json={"gmt": B}, timeout=2).json()
    assert first["redirect"] == X
    assert "redirect" not in second


@pytest.mark.parametrize("payload", [{}, {"timestamp": "soon"}, {"timestamp": 5}])
def test_bad_redirects_are_400(url: str, payload) -> None:
    r = requests.post(url + "/redirect", json=payload, timeout=2)
    assert r.status_code == 400


def test_options_is_empty_200_on_any_path(url: str) -> None:
    for path in ("/ping", "/update", "/whatever"):
        r = requests.options(url + path, timeout=2)
        assert r.status_code == 200
        assert r.content == b""
        assert r.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.parametrize(
    "method,path",
    [("GET", "/update"), ("GET", "/"), ("POST", "/ping"), ("PUT", "/update"), ("DELETE", "/ping")],
)
def test_other_routes_are_404(url: str, method: str, path: str) -> None:
    r = requests.request(method, url + path, json={"gmt": A}, timeout=2)
    assert r.status_code == 404
    assert r.json() == {"error": "Not found"}


def test_client_maps_statuses_to_errors(client: RelayClient) -> None:
    with pytest.raises(NoData):
        client.ping()
    with pytest.raises(InvalidPayload):
        client.push({"gmt": "nope"})

    client.set_redirect(X)
    assert client.push({"gmt": A}) == {"success": True, "received": A, "redirect": X}
    assert client.ping()["gmt"] == A


def test_client_reports_unreachable_relay_as_transport_failure() -> None:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        free_port = s.getsockname()[1]
    with pytest.raises(TransportFailure):
        RelayClient(free_port, host="127.0.0.1", timeout=0.5).ping()


def test_port_in_use_raises_bind_conflict_and_stays_stopped(server: RelayServer) -> None:
    other = RelayServer(host="127.0.0.1")
    with pytest.raises(BindConflict) as info:
        other.start(server.port)

    assert info.value.port == server.port
    assert not other.running
    assert other.port is None


def test_start_on_same_port_is_a_noop(server: RelayServer) -> None:
    port = server.port
    assert server.start(0) == port
    assert server.running


def test_moving_to_another_port_releases_the_old_one(clock) -> None:
    srv = RelayServer(RelayState(clock=clock), host="127.0.0.1")
    first = srv.start(0)
    try:
        requests.post(f"http://127.0.0.1:{first}/update", json={"gmt": A}, timeout=2)

        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            target = s.getsockname()[1]
        second = srv.start(target)

        assert second == target
        # state does not survive a stop
        assert requests.get(f"http://127.0.0.1:{second}/ping", timeout=2).status_code == 404
        with pytest.raises(requests.ConnectionError):
            requests.get(f"http://127.0.0.1:{first}/ping", timeout=1)
    finally:
        srv.stop()
    assert not srv.running


def test_redirect_to_feed_item_reaches_the_producer(client: RelayClient, url: str) -> None:
    feed = [Candidate("a", A), Candidate("x", X)]
    driver = SyncDriver(client, feed=lambda ctx: feed, current_context=lambda: "chan-1",
                        sink=lambda ctx, item_id: None, interval=3600)

    assert driver.redirect_to("x") == X
    ack = requests.post(url + "/update", json={"gmt": A}, timeout=2).json()
    assert ack["redirect"] == X
