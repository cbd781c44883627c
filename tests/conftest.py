"""Shared fixtures: an in-process fake bitcoind reached through a fake requests session."""

import hashlib
import sys
import threading
from collections import deque
from pathlib import Path

import pytest
import requests

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from controller.config import ControllerConfig, DaemonEndpoint


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}", response=self)


class FakeBitcoind:
    """Minimal regtest node: a list of block hashes plus knobs for failure injection."""

    MINER_ADDRESS = "bcrt1qfakeminer0000000000000000000000000000"

    def __init__(self, height=100):
        self.lock = threading.Lock()
        self._counter = 0
        self.chain = [self._new_hash() for _ in range(height + 1)]
        self.header_lag = 0
        self.ibd = False
        # Highest header ever seen; invalidateblock leaves it in place.
        self.best_header = height
        # One-shot (answered, release) events that hold the next getblockchaininfo reply.
        self.hold_next_info = None

        self.calls = []
        self.generate_calls = []
        self.script = deque()
        self.rejections = {}

        # Production knobs.
        self.gate = None
        self.timeout_after_mining = False
        self.active_productions = 0
        self.max_active_productions = 0

    def _new_hash(self):
        self._counter += 1
        return hashlib.sha256(f"block-{self._counter}".encode()).hexdigest()

    @property
    def height(self):
        return len(self.chain) - 1

    @property
    def tip(self):
        return self.chain[-1]

    def rewind(self, height):
        with self.lock:
            del self.chain[height + 1 :]
            self.best_header = self.height

    def method_calls(self, method):
        return [c for c in self.calls if c[0] == method]

    def _ok(self, payload, result):
        return FakeResponse(200, {"result": result, "error": None, "id": payload.get("id")})

    def _error(self, payload, code, message, status=500):
        return FakeResponse(status, {"result": None, "error": {"code": code, "message": message}, "id": payload.get("id")})

    def handle(self, url, payload, auth, timeout):
        method = payload["method"]
        params = payload.get("params") or []
        with self.lock:
            self.calls.append((method, list(params), timeout))
            scripted = self.script.popleft() if self.script else None

        if isinstance(scripted, BaseException):
            raise scripted
        if isinstance(scripted, FakeResponse):
            return scripted

        if method in self.rejections:
            code, message = self.rejections[method]
            return self._error(payload, code, message)

        if method == "getblockchaininfo":
            with self.lock:
                hold, self.hold_next_info = self.hold_next_info, None
                response = self._ok(
                    payload,
                    {
                        "chain": "regtest",
                        "blocks": self.height,
                        "headers": max(self.height + self.header_lag, self.best_header),
                        "bestblockhash": self.tip,
                        "initialblockdownload": self.ibd,
                    },
                )
            if hold is not None:
                answered, release = hold
                answered.set()
                release.wait(timeout=10)
            return response
        if method == "getbestblockhash":
            return self._ok(payload, self.tip)
        if method == "getblockcount":
            return self._ok(payload, self.height)
        if method == "getblockhash":
            height = int(params[0])
            if height < 0 or height > self.height:
                return self._error(payload, -8, "Block height out of range")
            return self._ok(payload, self.chain[height])
        if method == "getnewaddress":
            return self._ok(payload, self.MINER_ADDRESS)
        if method == "generatetoaddress":
            return self._generate(payload, int(params[0]), params[1], timeout)
        if method == "invalidateblock":
            with self.lock:
                if params[0] not in self.chain:
                    return self._error(payload, -5, "Block not found")
                del self.chain[self.chain.index(params[0]) :]
            return self._ok(payload, None)
        return self._error(payload, -32601, "Method not found", status=404)

    def _generate(self, payload, count, address, timeout):
        with self.lock:
            self.active_productions += 1
            self.max_active_productions = max(self.max_active_productions, self.active_productions)
            self.generate_calls.append(count)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=10)
            with self.lock:
                new_hashes = [self._new_hash() for _ in range(count)]
                self.chain.extend(new_hashes)
                self.best_header = max(self.best_header, self.height)
        finally:
            with self.lock:
                self.active_productions -= 1
        if self.timeout_after_mining:
            raise requests.exceptions.ReadTimeout(f"Read timed out. (read timeout={timeout})")
        return self._ok(payload, new_hashes)


class FakeSession:
    """Stands in for requests.Session in front of FakeBitcoind."""

    def __init__(self, daemon):
        self.daemon = daemon
        self.closed = False

    def post(self, url, json=None, auth=None, timeout=None, **kwargs):
        return self.daemon.handle(url, json, auth, timeout)

    def close(self):
        self.closed = True


class RecordingSession:
    """Webhook receiver: records posted events, optionally failing first."""

    def __init__(self, fail_times=0, status_code=200):
        self.lock = threading.Lock()
        self.posts = []
        self.fail_times = fail_times
        self.status_code = status_code
        self.delivered = threading.Event()

    def post(self, url, json=None, timeout=None, **kwargs):
        with self.lock:
            if self.fail_times > 0:
                self.fail_times -= 1
                raise requests.exceptions.ConnectionError("Connection refused")
            self.posts.append((url, json))
        self.delivered.set()
        return FakeResponse(self.status_code, {"status": "ok"})

    def close(self):
        pass


def make_config(**overrides):
    """Create a ControllerConfig with defaults for testing."""
    daemon = DaemonEndpoint(
        host="127.0.0.1",
        port=18443,
        username="user",
        password="pass",
        timeout=1.0,
        production_timeout=2.0,
    )
    defaults = dict(
        daemon=daemon,
        poll_interval=60.0,
        queue_depth=5,
        miner_address=FakeBitcoind.MINER_ADDRESS,
        rpc_max_attempts=3,
        rpc_backoff_base=0.0,
        rpc_backoff_max=0.0,
        result_timeout=10.0,
    )
    defaults.update(overrides)
    return ControllerConfig(**defaults)


@pytest.fixture()
def daemon():
    return FakeBitcoind(height=100)


@pytest.fixture()
def session(daemon):
    return FakeSession(daemon)
