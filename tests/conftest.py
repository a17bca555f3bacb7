import json

import pytest
import requests
from requests.structures import CaseInsensitiveDict

BASE_URL = "https://aemet.test/opendata"
DATOS_URL = "https://aemet.test/opendata/sh/abc123"


def make_response(status=200, body=b"", headers=None):
    """requests.Response real con contenido fijo. body: bytes, str o estructura JSON."""
    if isinstance(body, bytes):
        content = body
    elif isinstance(body, str):
        content = body.encode("utf-8")
    else:
        content = json.dumps(body).encode("utf-8")

    response = requests.Response()
    response.status_code = status
    response._content = content
    response.headers = CaseInsensitiveDict(headers or {})
    return response


def metadata_response(datos_url=DATOS_URL, status=200):
    return make_response(status, {"descripcion": "exito", "estado": 200, "datos": datos_url})


class FakeSession:
    """Sesión con respuestas programadas por URL; falla ante llamadas no esperadas."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def script(self, url, *items):
        self.routes.setdefault(url, []).extend(items)

    def get(self, url, headers=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "timeout": timeout})
        queue = self.routes.get(url)
        if not queue:
            raise AssertionError(f"Llamada inesperada a {url}")
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def urls(self):
        return [call["url"] for call in self.calls]


class SleepRecorder:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def sleeper():
    return SleepRecorder()
