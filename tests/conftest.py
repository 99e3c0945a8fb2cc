"""
Pytest configuration and shared fixtures
"""
import json
import os
import socketserver
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from platform_component.errors import ConnectError, PublishError  # noqa: E402
from platform_component.keys import is_valid_public_key  # noqa: E402


NATS_URL = "nats://127.0.0.1:4222"


class ControlPlane:
    """
    Threaded HTTP server standing in for the control plane connect endpoint.

    Accepts data {"Test": "testing", "Ing": -1} and replies with JWT123 /
    CACCOUNT / NATS_URL and a {"Bucket": "bucket"} config, unless reply is set.
    """

    def __init__(self):
        self.requests = []
        self.reply = None  # (status, body bytes) overriding the validation logic
        self.config = {"Bucket": "bucket"}
        self.nats_url = NATS_URL
        self.trickle_gap = None  # seconds between reply bytes when set
        plane = self

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, *args):
                pass

            def _send(self, status, body, content_type="text/plain"):
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _trickle(self, body):
                self.send_response(200)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                try:
                    for i in range(len(body)):
                        self.wfile.write(body[i:i + 1])
                        time.sleep(plane.trickle_gap)
                except OSError:
                    pass  # client gave up

            def do_GET(self):
                self._send(405, b"only POST allowed\n")

            def do_POST(self):
                length = int(self.headers.get("Content-Length", "0"))
                raw = self.rfile.read(length)
                plane.requests.append({"path": self.path, "headers": dict(self.headers), "body": raw})

                if plane.trickle_gap is not None:
                    self._trickle(b'{"jwt": "J", "account": "A", "server": "S"}')
                    return

                if plane.reply is not None:
                    status, body = plane.reply
                    self._send(status, body, "application/json")
                    return

                try:
                    req = json.loads(raw)
                except ValueError:
                    self._send(500, b"failed to unmarshal body\n")
                    return

                data = req.get("data")
                if not isinstance(data, dict):
                    self._send(500, b"failed to unmarshal test config\n")
                    return

                if not is_valid_public_key(req.get("nkey_public", "")):
                    self._send(500, b"failed to verify public user nkey\n")
                    return

                if data.get("Test") != "testing" or data.get("Ing") != -1:
                    self._send(500, b"unexpected platform config\n")
                    return

                response = {"jwt": "JWT123", "account": "CACCOUNT", "server": NATS_URL}
                if plane.config is not None:
                    response["config"] = plane.config
                self._send(200, json.dumps(response).encode(), "application/json")

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.url = f"http://127.0.0.1:{self.server.server_address[1]}"
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def close(self):
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture
def control_plane():
    plane = ControlPlane().start()
    yield plane
    plane.close()


class FakeBus:
    """Stand-in for NatsBus recording publishes."""

    def __init__(self, name, **kwargs):
        self.name = name
        self.server = None
        self.user_jwt = None
        self.identity = None
        self.published = []
        self.connected = False
        self.closed = False
        self.close_on_drain = True
        self.fail_publish = False
        self.drain_calls = 0
        self._lock = threading.Lock()

    def connect(self, server, *, user_jwt, identity):
        if not server:
            raise ConnectError("no broker address to connect to")
        self.server = server
        self.user_jwt = user_jwt
        self.identity = identity
        self.connected = True

    @property
    def is_connected(self):
        return self.connected and not self.closed

    def publish(self, subject, data):
        if self.fail_publish or self.closed:
            raise PublishError("nats connection closed")
        with self._lock:
            self.published.append((subject, data))

    def publish_nowait(self, subject, data):
        self.publish(subject, data)

    def drain(self, on_closed):
        self.drain_calls += 1
        if self.close_on_drain:
            self.closed = True
            on_closed()


@pytest.fixture
def fake_bus(monkeypatch):
    """
    Patch the NatsBus used by Component; returns the list of created buses.
    """
    created = []

    def _ctor(name, **kwargs):
        bus = FakeBus(name, **kwargs)
        created.append(bus)
        return bus

    monkeypatch.setattr("platform_component.component.NatsBus", _ctor)
    return created


class NatsServer:
    """
    Socket-level NATS server stand-in speaking just enough of the protocol
    for nats-py: INFO with a nonce, CONNECT, PING/PONG, SUB and PUB.
    """

    NONCE = "test-nonce"

    def __init__(self):
        self.connects = []
        self.published = []
        plane = self

        class Handler(socketserver.StreamRequestHandler):
            def handle(self):
                info = {
                    "server_id": "fake",
                    "version": "2.10.0",
                    "max_payload": 1048576,
                    "auth_required": True,
                    "nonce": plane.NONCE,
                }
                self.wfile.write(b"INFO " + json.dumps(info).encode() + b"\r\n")
                while True:
                    line = self.rfile.readline()
                    if not line:
                        return
                    op, _, rest = line.rstrip(b"\r\n").partition(b" ")
                    op = op.upper()
                    if op == b"CONNECT":
                        plane.connects.append(json.loads(rest))
                    elif op == b"PING":
                        self.wfile.write(b"PONG\r\n")
                    elif op == b"PUB":
                        parts = rest.split()
                        payload = self.rfile.read(int(parts[-1]) + 2)[:-2]
                        plane.published.append((parts[0].decode(), payload))

        class Server(socketserver.ThreadingTCPServer):
            daemon_threads = True
            allow_reuse_address = True

        self.server = Server(("127.0.0.1", 0), Handler)
        self.url = f"nats://127.0.0.1:{self.server.server_address[1]}"
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def close(self):
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture
def nats_server():
    server = NatsServer().start()
    yield server
    server.close()
