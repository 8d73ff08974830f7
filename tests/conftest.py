"""Shared fixtures: test configuration and a recording stub upstream."""

import httpx
import pytest
from starlette.testclient import TestClient

from config import Credentials, ProxyConfig
from main import create_app

ACCESS_KEY = "AKIDEXAMPLE"
SECRET_KEY = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"
REGION = "oss-cn-hangzhou"


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered in separate chunks, remembering whether it was closed."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self):
        self.closed = True


class StubUpstream:
    """httpx.MockTransport handler that records requests and answers with a canned response."""

    def __init__(self):
        self.requests = []
        self.status_code = 200
        self.headers = [("ETag", '"5d41402abc4b2a76b9719d911017c592"'), ("x-oss-request-id", "abc123")]
        self.body = b"stored"
        self.chunks = None
        self.error = None
        self.streams = []

    def __call__(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        # Explicit stream so the proxy reads the raw body itself.
        stream = ChunkStream(self.chunks if self.chunks is not None else [self.body])
        self.streams.append(stream)
        return httpx.Response(self.status_code, headers=self.headers, stream=stream)

    @property
    def last(self):
        return self.requests[-1]


def make_config(**overrides):
    values = dict(region=REGION, credentials=Credentials(ACCESS_KEY, SECRET_KEY))
    values.update(overrides)
    return ProxyConfig(**values)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def upstream():
    return StubUpstream()


@pytest.fixture
def make_client(upstream):
    """Factory for a TestClient over the proxy app, lifespan included."""
    clients = []

    def factory(config):
        client = TestClient(create_app(config, transport=httpx.MockTransport(upstream)))
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, config):
    return make_client(config)
