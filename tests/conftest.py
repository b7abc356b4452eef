import os
import sys
import threading

BASE = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE not in sys.path:
    sys.path.insert(0, BASE)

FIXTURES = os.path.join(os.path.dirname(__file__), 'fixtures')

# smallest valid PNG signature + IHDR chunk start; contains NUL bytes on purpose
PNG_BYTES = b'\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01\x08\x06\x00\x00\x00'


def read_fixture(name, mode='rb'):
    with open(os.path.join(FIXTURES, name), mode) as f:
        return f.read()


class FakeResponse:
    def __init__(self, status_code, content=b''):
        self.status_code = status_code
        self.content = content


class FakeSession:
    """Stands in for requests.Session; unknown URLs answer 404."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, timeout=None, **kwargs):
        with self._lock:
            self.calls.append(url)
        reply = self.routes.get(url, 404)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, int):
            return FakeResponse(reply)
        status, body = reply
        if isinstance(body, str):
            body = body.encode('utf-8')
        return FakeResponse(status, body)

