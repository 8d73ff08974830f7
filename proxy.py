"""Path routing and upstream forwarding for the OSS proxy."""

import logging
from dataclasses import dataclass, field

import anyio
import httpx

from errors import BadRequestError, UpstreamError

LOG = logging.getLogger(__name__)

# Recomputed by the signer; inbound values must never reach upstream.
AUTH_HEADERS = frozenset({b"authorization", b"date"})

# Owned by the HTTP client/server of each hop.
HOP_BY_HOP_HEADERS = frozenset({
    b"connection",
    b"keep-alive",
    b"proxy-connection",
    b"te",
    b"trailer",
    b"transfer-encoding",
    b"upgrade",
})
_REQUEST_TRANSPORT_HEADERS = HOP_BY_HOP_HEADERS | {b"host", b"content-length", b"expect"}


@dataclass
class ProxyRequest:
    """An inbound request after routing. Headers are raw (name, value) byte pairs in arrival order."""

    method: str
    bucket: str
    object_key: str = ""
    raw_query: str = ""
    headers: list = field(default_factory=list)
    body: bytes = b""


def parse_path(raw_path):
    """Split `/<bucket>/<object>` on the first separator after the bucket.

    The path is used exactly as received: no percent-decoding, no
    normalization, nested separators in the object key are kept.

    Returns:
        tuple: (bucket, object_key), object_key may be ''

    Raises:
        BadRequestError: when the bucket part is empty
    """
    path = raw_path[1:] if raw_path.startswith("/") else raw_path
    bucket, _, object_key = path.partition("/")
    if not bucket:
        raise BadRequestError("missing bucket")
    return bucket, object_key


def escape_dot_segments(object_key):
    """Percent-encode `.` and `..` segments so URL parsing cannot resolve them.

    The upstream decodes `%2E` back to `.`, so it still sees the key as received.
    """
    return "/".join(
        segment.replace(".", "%2E") if segment in (".", "..") else segment
        for segment in object_key.split("/")
    )


def build_target_url(config, bucket, object_key, raw_query=""):
    """`<scheme>://<bucket>.<region>[-internal].<domain>/<object>[?query]`"""
    query = f"?{raw_query}" if raw_query else ""
    return f"{config.scheme}://{bucket}.{config.endpoint_suffix}/{escape_dot_segments(object_key)}{query}"


def forwardable_headers(headers):
    """Drop auth headers and transport-owned headers, keep everything else in order."""
    return [
        (name, value)
        for name, value in headers
        if name.lower() not in AUTH_HEADERS and name.lower() not in _REQUEST_TRANSPORT_HEADERS
    ]


def relayable_headers(headers):
    """Upstream response headers minus hop-by-hop ones. Content-Length is kept as sent."""
    return [(name, value) for name, value in headers if name.lower() not in HOP_BY_HOP_HEADERS]


async def iter_upstream_body(response):
    """Yield the upstream body undecoded, closing the response however the relay ends."""
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        LOG.error("Upstream body for %s %s broke off: %s", response.request.method, response.request.url, e)
        raise
    finally:
        with anyio.CancelScope(shield=True):
            await response.aclose()


class Forwarder:
    """Builds, signs and sends the upstream request for one ProxyRequest.

    One httpx.AsyncClient is shared by all requests; it holds no per-request
    state beyond the transport's connection pool.
    """

    def __init__(self, config, signer, transport=None):
        self._config = config
        self.signer = signer
        self._transport = transport
        self._client = None

    async def startup(self):
        self._client = httpx.AsyncClient(transport=self._transport, follow_redirects=False)
        LOG.info(
            "Forwarding to *.%s (%s signer, internal=%s)",
            self._config.endpoint_suffix,
            self._config.signer,
            self._config.use_internal,
        )

    async def shutdown(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def target_url(self, proxy_request):
        return build_target_url(
            self._config, proxy_request.bucket, proxy_request.object_key, proxy_request.raw_query
        )

    def build_request(self, proxy_request):
        """Unsigned draft request for upstream.

        Raises:
            UpstreamError: (500) when the target URL or headers cannot form a request
        """
        try:
            return httpx.Request(
                proxy_request.method,
                self.target_url(proxy_request),
                headers=forwardable_headers(proxy_request.headers),
                content=proxy_request.body,
            )
        except (httpx.InvalidURL, ValueError, TypeError) as e:
            raise UpstreamError(f"cannot build upstream request: {e}", status_code=500) from e

    async def forward(self, proxy_request):
        """Sign and send the request.

        Returns:
            The open httpx.Response; its body has not been read and the caller
            must close it

        Raises:
            SigningError: signing failed, nothing was sent
            UpstreamError: the request could not be built (500) or sent (502)
        """
        if self._client is None:
            raise UpstreamError("forwarder is not started", status_code=500)

        request = self.build_request(proxy_request)
        self.signer.sign(request, proxy_request.bucket, proxy_request.object_key)

        LOG.info("Proxying %s %s", request.method, request.url)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamError(f"upstream request failed: {e}") from e

        LOG.debug("Upstream answered %d for %s %s", response.status_code, request.method, request.url)
        return response
