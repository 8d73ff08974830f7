"""Process configuration, read once from the environment at startup."""

import os
from dataclasses import dataclass, field

from uvicorn.config import LOG_LEVELS

from errors import ConfigError

DEFAULT_DOMAIN = "aliyuncs.com"
SIGNER_CHOICES = ("v4", "v2")
_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Credentials:
    access_key: str
    secret_key: str = field(repr=False)


@dataclass(frozen=True)
class ProxyConfig:
    """Immutable proxy settings shared read-only by every request handler."""

    region: str
    credentials: Credentials
    use_internal: bool = False
    signer: str = "v4"
    domain: str = DEFAULT_DOMAIN
    scheme: str = "https"
    host: str = "0.0.0.0"
    port: int = 9000
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.region:
            raise ConfigError("OSS_REGION is required")
        if not self.credentials.access_key or not self.credentials.secret_key:
            raise ConfigError("Set OSS_ACCESS_KEY and OSS_SECRET_KEY environment variables first")
        if self.signer not in SIGNER_CHOICES:
            raise ConfigError(f"OSS_SIGNER must be one of {', '.join(SIGNER_CHOICES)}, got {self.signer!r}")
        if self.scheme not in ("http", "https"):
            raise ConfigError(f"OSS_SCHEME must be http or https, got {self.scheme!r}")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")

    @property
    def endpoint_suffix(self):
        """Host suffix after the bucket name, e.g. `oss-cn-hangzhou-internal.aliyuncs.com`."""
        internal = "-internal" if self.use_internal else ""
        return f"{self.region}{internal}.{self.domain}"


def load_config(environ=None):
    """Build a ProxyConfig from environment variables.

    Args:
        environ: Mapping to read from, defaults to os.environ

    Returns:
        ProxyConfig

    Raises:
        ConfigError: when a required value is missing or a value is malformed
    """
    if environ is None:
        environ = os.environ

    port = environ.get("PORT", "9000")
    try:
        port = int(port)
    except ValueError:
        raise ConfigError(f"PORT must be an integer, got {port!r}") from None

    return ProxyConfig(
        region=environ.get("OSS_REGION", "").strip(),
        credentials=Credentials(
            access_key=environ.get("OSS_ACCESS_KEY", "").strip(),
            secret_key=environ.get("OSS_SECRET_KEY", "").strip(),
        ),
        use_internal=environ.get("OSS_USE_INTERNAL", "").strip().lower() in _TRUE_VALUES,
        signer=environ.get("OSS_SIGNER", "v4").strip().lower(),
        domain=environ.get("OSS_DOMAIN", DEFAULT_DOMAIN).strip(),
        scheme=environ.get("OSS_SCHEME", "https").strip().lower(),
        host=environ.get("HOST", "0.0.0.0"),
        port=port,
        log_level=environ.get("LOG_LEVEL", "INFO").upper(),
    )
