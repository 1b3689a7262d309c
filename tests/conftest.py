"""Shared fixtures for the Watchtower tests."""

import json
from typing import Callable, Dict, List

import httpx
import pytest


class FakeClock:
    """Controllable replacement for time.time / time.monotonic."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it answered."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(record)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


def json_response(data, status_code: int = 200, headers: Dict[str, str] = None) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(data).encode(),
        headers={"content-type": "application/json", **(headers or {})},
    )


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32
SVG_BYTES = b'<?xml version="1.0"?><svg xmlns="http://www.w3.org/2000/svg"></svg>'


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_path(tmp_path) -> str:
    return str(tmp_path / "data")
