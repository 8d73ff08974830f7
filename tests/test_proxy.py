import anyio
import httpx
import pytest

from errors import BadRequestError, SigningError, UpstreamError
from proxy import (
    Forwarder,
    ProxyRequest,
    build_target_url,
    escape_dot_segments,
    forwardable_headers,
    iter_upstream_body,
    parse_path,
    relayable_headers,
)
from signature_helpers import canonical_uri
from signers import create_signer

from .conftest import make_config


class TestParsePath:
    @pytest.mark.parametrize(
        "raw_path, expected",
        [
            ("/mybucket/a/b/c.txt", ("mybucket", "a/b/c.txt")),
            ("/mybucket/key", ("mybucket", "key")),
            ("/mybucket/", ("mybucket", "")),
            ("/mybucket", ("mybucket", "")),
            ("/mybucket/dir/", ("mybucket", "dir/")),
            ("/mybucket//double", ("mybucket", "/double")),
        ],
    )
    def test_split_on_first_separator(self, raw_path, expected):
        assert parse_path(raw_path) == expected

    def test_no_percent_decoding(self):
        assert parse_path("/mybucket/a%2Fb%20c") == ("mybucket", "a%2Fb%20c")

    @pytest.mark.parametrize("raw_path", ["", "/", "//key"])
    def test_missing_bucket(self, raw_path):
        with pytest.raises(BadRequestError, match="missing bucket"):
            parse_path(raw_path)


class TestBuildTargetUrl:
    def test_public_endpoint(self):
        url = build_target_url(make_config(), "mybucket", "a/b/c.txt")
        assert url == "https://mybucket.oss-cn-hangzhou.aliyuncs.com/a/b/c.txt"

    def test_internal_endpoint_and_query(self):
        url = build_target_url(make_config(use_internal=True), "mybucket", "", "acl")
        assert url == "https://mybucket.oss-cn-hangzhou-internal.aliyuncs.com/?acl"

    def test_dot_segments_escaped(self):
        url = build_target_url(make_config(), "mybucket", "a/../b/./c.txt")
        assert url == "https://mybucket.oss-cn-hangzhou.aliyuncs.com/a/%2E%2E/b/%2E/c.txt"


class TestEscapeDotSegments:
    @pytest.mark.parametrize(
        "object_key, expected",
        [
            ("..", "%2E%2E"),
            ("./x", "%2E/x"),
            ("a/../../b", "a/%2E%2E/%2E%2E/b"),
            ("dir/", "dir/"),
            ("", ""),
        ],
    )
    def test_dot_only_segments(self, object_key, expected):
        assert escape_dot_segments(object_key) == expected

    @pytest.mark.parametrize("object_key", ["...", ".hidden", "a..b", "file.txt", "v1./x"])
    def test_other_dots_untouched(self, object_key):
        assert escape_dot_segments(object_key) == object_key

    def test_escaped_path_signs_as_received(self):
        # The derived-key canonical URI decodes once, so both forms sign alike.
        assert canonical_uri("/a/%2E%2E/b") == canonical_uri("/a/../b") == "/a/../b"


class TestHeaderFiltering:
    def test_auth_and_transport_headers_dropped(self):
        headers = [
            (b"host", b"proxy.local:9000"),
            (b"authorization", b"Bearer stale"),
            (b"Date", b"Mon, 01 Jan 2001 00:00:00 GMT"),
            (b"content-length", b"5"),
            (b"connection", b"keep-alive"),
            (b"x-oss-meta-a", b"1"),
            (b"content-type", b"text/plain"),
            (b"x-oss-meta-a", b"2"),
        ]
        assert forwardable_headers(headers) == [
            (b"x-oss-meta-a", b"1"),
            (b"content-type", b"text/plain"),
            (b"x-oss-meta-a", b"2"),
        ]

    def test_response_hop_by_hop_dropped(self):
        headers = [(b"Transfer-Encoding", b"chunked"), (b"Connection", b"close"), (b"ETag", b'"x"')]
        assert relayable_headers(headers) == [(b"ETag", b'"x"')]

    def test_response_content_length_kept(self):
        headers = [(b"Content-Length", b"1024"), (b"Content-Type", b"image/png")]
        assert relayable_headers(headers) == headers


class TestForwarder:
    def make_forwarder(self, upstream, **overrides):
        config = make_config(**overrides)
        return Forwarder(config, create_signer(config), transport=httpx.MockTransport(upstream))

    def forward(self, forwarder, proxy_request):
        """Forward and drain the relayed body, returning (response, chunks)."""
        async def run():
            await forwarder.startup()
            try:
                response = await forwarder.forward(proxy_request)
                return response, [chunk async for chunk in iter_upstream_body(response)]
            finally:
                await forwarder.shutdown()

        return anyio.run(run)

    def test_build_request_copies_body_and_headers(self, upstream):
        forwarder = self.make_forwarder(upstream)
        request = forwarder.build_request(ProxyRequest(
            method="PUT",
            bucket="mybucket",
            object_key="k",
            headers=[(b"authorization", b"x"), (b"x-oss-meta-a", b"1")],
            body=b"hello",
        ))
        assert request.url == "https://mybucket.oss-cn-hangzhou.aliyuncs.com/k"
        assert request.content == b"hello"
        assert "authorization" not in request.headers
        assert request.headers["x-oss-meta-a"] == "1"

    def test_build_request_keeps_dot_segments(self, upstream):
        forwarder = self.make_forwarder(upstream)
        request = forwarder.build_request(ProxyRequest(method="GET", bucket="mybucket", object_key="a/../b/./c.txt"))
        assert request.url.raw_path == b"/a/%2E%2E/b/%2E/c.txt"

    def test_unbuildable_url_is_local_fault(self, upstream):
        forwarder = self.make_forwarder(upstream)
        with pytest.raises(UpstreamError) as excinfo:
            forwarder.build_request(ProxyRequest(method="GET", bucket="bad\x00bucket"))
        assert excinfo.value.status_code == 500

    def test_forward_relays_raw_response(self, upstream):
        upstream.status_code = 206
        upstream.headers = [("Content-Encoding", "gzip"), ("Content-Length", "4")]
        upstream.body = b"\x1f\x8b\x08\x00"

        response, chunks = self.forward(
            self.make_forwarder(upstream), ProxyRequest(method="GET", bucket="mybucket", object_key="k")
        )

        assert response.status_code == 206
        assert b"".join(chunks) == b"\x1f\x8b\x08\x00"
        assert (b"Content-Encoding", b"gzip") in response.headers.raw

    def test_body_relayed_chunk_by_chunk_then_closed(self, upstream):
        upstream.chunks = [b"part-1,", b"part-2,", b"part-3"]

        response, chunks = self.forward(
            self.make_forwarder(upstream), ProxyRequest(method="GET", bucket="mybucket", object_key="big")
        )

        assert chunks == [b"part-1,", b"part-2,", b"part-3"]
        assert response.is_closed
        assert upstream.streams[-1].closed

    def test_network_failure_is_bad_gateway(self, upstream):
        upstream.error = httpx.ConnectError("connection refused")
        with pytest.raises(UpstreamError) as excinfo:
            self.forward(self.make_forwarder(upstream), ProxyRequest(method="GET", bucket="mybucket", object_key="k"))
        assert excinfo.value.status_code == 502

    def test_signing_failure_never_sends(self, upstream):
        class BrokenSigner:
            def sign(self, request, bucket, object_key, now=None):
                raise SigningError("no key")

        forwarder = self.make_forwarder(upstream)
        forwarder.signer = BrokenSigner()
        with pytest.raises(SigningError):
            self.forward(forwarder, ProxyRequest(method="PUT", bucket="mybucket", object_key="k", body=b"x"))
        assert upstream.requests == []

    def test_not_started(self, upstream):
        forwarder = self.make_forwarder(upstream)
        with pytest.raises(UpstreamError):
            anyio.run(forwarder.forward, ProxyRequest(method="GET", bucket="mybucket"))
