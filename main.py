import contextlib
import logging
import sys

import anyio
import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect
from starlette.responses import PlainTextResponse, Response, StreamingResponse
from starlette.routing import Route
from uvicorn.config import LOG_LEVELS

from config import load_config
from errors import ConfigError, ProxyError
from proxy import Forwarder, ProxyRequest, iter_upstream_body, parse_path, relayable_headers
from signers import create_signer

LOG = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "PUT", "POST", "DELETE", "PATCH", "OPTIONS"]

# Reported when the caller hung up before upstream answered; nobody reads it.
CLIENT_CLOSED_REQUEST = 499


def raw_request_path(request):
    """Path as received on the wire, still percent-encoded"""
    raw_path = request.scope.get("raw_path")
    if raw_path is None:
        return request.scope["path"]
    return raw_path.decode("latin-1").split("?", 1)[0]


async def _watch_disconnect(request, cancel_scope):
    # The body is already buffered, so the next message can only be a disconnect.
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            LOG.warning("Client disconnected, cancelling upstream %s %s", request.method, request.url.path)
            cancel_scope.cancel()
            return


async def forward_until_disconnect(request, forwarder, proxy_request):
    """Run the upstream call, cancelling it if the inbound connection goes away.

    Returns:
        The open httpx.Response, or None when the client disconnected first
    """
    upstream = None
    error = None
    async with anyio.create_task_group() as tg:
        tg.start_soon(_watch_disconnect, request, tg.cancel_scope)
        try:
            upstream = await forwarder.forward(proxy_request)
        except ProxyError as e:
            error = e
        finally:
            tg.cancel_scope.cancel()

    if error is not None:
        raise error
    return upstream


async def health_check(request):
    """Liveness check, no routing and no upstream call"""
    return PlainTextResponse("ok")


async def proxy_handler(request):
    """Route, sign and forward one request, relaying the upstream response verbatim"""
    forwarder = request.app.state.forwarder
    target = "-"
    try:
        bucket, object_key = parse_path(raw_request_path(request))
        proxy_request = ProxyRequest(
            method=request.method,
            bucket=bucket,
            object_key=object_key,
            raw_query=request.scope.get("query_string", b"").decode("latin-1"),
            headers=list(request.headers.raw),
        )
        target = forwarder.target_url(proxy_request)

        try:
            proxy_request.body = await request.body()
        except ClientDisconnect as e:
            raise ProxyError("failed to read request body") from e

        upstream = await forward_until_disconnect(request, forwarder, proxy_request)
    except ProxyError as e:
        LOG.error("%s %s failed (%d): %s", request.method, target, e.status_code, e)
        return PlainTextResponse(str(e), status_code=e.status_code)

    if upstream is None:
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    response = StreamingResponse(
        iter_upstream_body(upstream),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    response.raw_headers = relayable_headers(upstream.headers.raw)
    return response


def create_app(config, transport=None):
    """Build the proxy application.

    Args:
        config: ProxyConfig, shared read-only by all requests
        transport: Optional httpx transport for the upstream client (tests)

    Returns:
        Starlette application
    """
    forwarder = Forwarder(config, create_signer(config), transport=transport)

    @contextlib.asynccontextmanager
    async def lifespan(app):
        await forwarder.startup()
        try:
            yield
        finally:
            await forwarder.shutdown()

    routes = [
        Route("/health", health_check, methods=["GET", "HEAD"]),
        Route("/{path:path}", proxy_handler, methods=PROXY_METHODS),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.config = config
    app.state.forwarder = forwarder
    return app


def run():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        config = load_config()
    except ConfigError as e:
        LOG.critical("%s", e)
        sys.exit(1)
    logging.getLogger().setLevel(LOG_LEVELS[config.log_level.lower()])

    LOG.info(
        "OSS proxy (%s signer) listening on %s:%d for region %s",
        config.signer,
        config.host,
        config.port,
        config.region,
    )
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    run()
