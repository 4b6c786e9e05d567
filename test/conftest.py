from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from threading import Thread, Lock
import time
import hashlib
import pytest

from typing import Dict, List, Tuple


def pytest_addoption(parser):
    parser.addoption("--runslow", action="store_true", default=False, help="run slow tests")

def pytest_configure(config):
    config.addinivalue_line("markers", "slow: mark test as slow to run")

def pytest_collection_modifyitems(config, items):

    if config.getoption("--runslow"):
        return

    skip_slow = pytest.mark.skip(reason="need --runslow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture(scope = "session")
def tmp_context(tmp_path_factory):
    """This fixture is used to create a game's install context global to test session.
    """

    from glauncher.context import Context
    return Context(tmp_path_factory.mktemp("context"))


@pytest.fixture
def context(tmp_path):
    """A fresh context for a single test, with a working directory apart.
    """

    from glauncher.context import Context
    return Context(tmp_path / "main", tmp_path / "work")


class LocalServer:
    """Local HTTP server serving files from memory, counting the requests it receives
    so that tests can assert on network accesses.
    """

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.redirects: Dict[str, str] = {}
        self.failures: Dict[str, List[int]] = {}
        self.requests: List[str] = []
        self.lock = Lock()
        self.base_url = ""
        self.delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    def add(self, path: str, data: bytes) -> Tuple[str, str, int]:
        """Serve the given data at the given path.

        :return: The URL, the SHA-1 and the size of the data.
        """
        self.files[path] = data
        return self.url(path), hashlib.sha1(data).hexdigest(), len(data)

    def fail(self, path: str, *statuses: int) -> None:
        """Respond to the next requests of the path with the given statuses.
        """
        self.failures.setdefault(path, []).extend(statuses)

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def count(self, path=None) -> int:
        with self.lock:
            if path is None:
                return len(self.requests)
            return self.requests.count(path)


class _LocalHandler(BaseHTTPRequestHandler):

    protocol_version = "HTTP/1.1"
    server_state: LocalServer

    def do_GET(self):

        state = self.server_state
        path = self.path

        with state.lock:
            state.requests.append(path)
            failures = state.failures.get(path)
            status = failures.pop(0) if failures else None
            state.in_flight += 1
            state.peak_in_flight = max(state.peak_in_flight, state.in_flight)

        try:
            if state.delay:
                time.sleep(state.delay)
            self._handle(state, path, status)
        finally:
            with state.lock:
                state.in_flight -= 1

    def _handle(self, state: LocalServer, path: str, status):
        if status is not None:
            self._respond(status, b"")
        elif path in state.redirects:
            self.send_response(302)
            self.send_header("Location", state.redirects[path])
            self.send_header("Content-Length", "0")
            self.end_headers()
        elif path in state.files:
            self._respond(200, state.files[path])
        else:
            self._respond(404, b"")

    def _respond(self, status: int, data: bytes):
        self.send_response(status)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def local_server():
    """A local HTTP server running in a thread for the duration of a test.
    """

    state = LocalServer()
    handler = type("Handler", (_LocalHandler,), {"server_state": state})

    server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    server.daemon_threads = True
    state.base_url = f"http://127.0.0.1:{server.server_address[1]}"

    thread = Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield state

    server.shutdown()
    server.server_close()
    thread.join()
