"""
End-to-end: a client that stops reading is disconnected once the write timeout
expires, while fast clients on the same server stay fast.

Runs a real uvicorn server on an ephemeral loopback port.
"""

import json
import socket
import threading
import time

import httpx
import pytest
import uvicorn

from localization_ab.api import create_app, uvicorn_config
from localization_ab.config import ServerSettings
from localization_ab.model import PayloadVariant
from localization_ab.payload_store import PayloadStore
from localization_ab.stats import summarize

PAYLOAD = json.dumps({"blob": "x" * (16 * 1024 * 1024)}).encode()
WRITE_TIMEOUT = 1.0


@pytest.fixture
def live_server():
    settings = ServerSettings(host="127.0.0.1", port=0, write_timeout=WRITE_TIMEOUT, log_level="critical")
    store = PayloadStore([PayloadVariant(name="huge.json", content=PAYLOAD)])
    server = uvicorn.Server(uvicorn_config(create_app(store, settings), settings))

    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    deadline = time.monotonic() + 10
    while not server.started:
        assert time.monotonic() < deadline, "server did not start"
        time.sleep(0.05)

    port = server.servers[0].sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}", port

    server.should_exit = True
    thread.join(timeout=10)


def _open_stalled_request(port):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4096)
    sock.connect(("127.0.0.1", port))
    body = b'{"userId": "slow-reader"}'
    sock.sendall(
        b"POST /experiment HTTP/1.1\r\nHost: localhost\r\nContent-Type: application/json\r\n"
        b"Content-Length: %d\r\n\r\n%s" % (len(body), body)
    )
    return sock


def _drain(sock):
    """Return bytes read until EOF; ``None`` if the server kept the connection open."""
    sock.settimeout(5)
    received = 0
    try:
        while True:
            data = sock.recv(1 << 20)
            if not data:
                return received
            received += len(data)
    except ConnectionResetError:
        return received
    except socket.timeout:
        return None


def test_stalled_reader_is_cut_off_and_fast_clients_unaffected(live_server):
    url, port = live_server
    sock = _open_stalled_request(port)
    try:
        latencies = []
        with httpx.Client(timeout=10) as client:
            stop_at = time.monotonic() + WRITE_TIMEOUT * 2
            while time.monotonic() < stop_at:
                start = time.perf_counter()
                resp = client.post(f"{url}/experiment", json={"userId": "fast-reader"})
                latencies.append((time.perf_counter() - start) * 1000)
                assert resp.status_code == 200
                assert len(resp.content) > len(PAYLOAD)

        received = _drain(sock)
    finally:
        sock.close()

    assert received is not None, "stalled connection was never closed"
    assert received < len(PAYLOAD)
    assert summarize(latencies).p99 < WRITE_TIMEOUT * 1000
