"""Error types raised while loading configuration or proxying a request."""


class ProxyError(Exception):
    """Base class for proxy errors. `status_code` is what the caller sees."""

    status_code = 500


class ConfigError(ProxyError):
    """Required configuration is missing or invalid. Fatal at startup."""


class BadRequestError(ProxyError):
    status_code = 400


class SigningError(ProxyError):
    """Digest or signature computation failed; the request is not forwarded."""

    status_code = 500


class UpstreamError(ProxyError):
    """The upstream request could not be built (500) or sent (502)."""

    def __init__(self, message, status_code=502):
        super().__init__(message)
        self.status_code = status_code
