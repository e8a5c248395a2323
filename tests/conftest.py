import os
import pytest

from aegis import create_app
from aegis.models import db as _db


@pytest.fixture(scope="session")
def app():
    os.environ["FLASK_ENV"] = "testing"
    app = create_app("testing")
    with app.app_context():
        _db.create_all()
        yield app
        _db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


# --- dobles HTTP (sin red) ---

class FakeResponse:
    def __init__(self, status_code=200, body=None, lines=None):
        self.status_code = status_code
        self._body = body
        self._lines = lines or []
        self.closed = False

    def json(self):
        if self._body is None:
            raise ValueError("no json body")
        return self._body

    def iter_lines(self, decode_unicode=False):
        for line in self._lines:
            yield line

    def close(self):
        self.closed = True


class FakeSession:
    """Devuelve las respuestas en orden (la última se repite); una excepción se lanza."""

    def __init__(self, post=None, get=None):
        self._post = list(post or [])
        self._get = list(get or [])
        self.posts = []
        self.gets = []

    @staticmethod
    def _next(queue):
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, **kwargs):
        self.posts.append({"url": url, **kwargs})
        return self._next(self._post)

    def get(self, url, **kwargs):
        self.gets.append({"url": url, **kwargs})
        return self._next(self._get)


@pytest.fixture()
def fake_response():
    return FakeResponse


@pytest.fixture()
def fake_session():
    return FakeSession
