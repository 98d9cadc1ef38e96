import math
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from matomo_tracking.builder import is_valid_auth_token
from matomo_tracking.dispatcher import DEFAULT_TIMEOUT
from matomo_tracking.errors import ConfigError

DEFAULT_TOKEN_LENGTH = 32


@dataclass(frozen=True)
class Settings:
    api_url: str
    id_site: int
    timeout: float = DEFAULT_TIMEOUT
    method: str = "GET"
    token_auth: Optional[str] = None
    token_length: Optional[int] = DEFAULT_TOKEN_LENGTH
    blocking: bool = False
    cookies_enabled: bool = True
    cookie_domain: str = ""
    cookie_path: str = "/"
    attribute: str = "tracker"
    log_file: str = "matomo-tracking.log"


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Read the tracker settings from the environment (and ``.env``)."""
    load_dotenv(env_file)

    api_url = os.getenv("MATOMO_URL", "").strip()
    if not api_url:
        raise ConfigError("MATOMO_URL is required")

    try:
        id_site = int(os.getenv("MATOMO_SITE_ID", ""))
    except ValueError:
        raise ConfigError("MATOMO_SITE_ID must be an integer") from None

    try:
        timeout = float(os.getenv("MATOMO_TIMEOUT", DEFAULT_TIMEOUT))
    except ValueError:
        raise ConfigError("MATOMO_TIMEOUT must be a numeric value") from None
    if not math.isfinite(timeout) or timeout <= 0:
        raise ConfigError(f"Invalid value supplied for request timeout: {timeout}")

    try:
        token_length = int(os.getenv("MATOMO_TOKEN_LENGTH", DEFAULT_TOKEN_LENGTH))
    except ValueError:
        raise ConfigError("MATOMO_TOKEN_LENGTH must be an integer") from None

    token_auth = os.getenv("MATOMO_TOKEN_AUTH") or None
    if token_auth is not None and not is_valid_auth_token(token_auth, token_length):
        raise ConfigError("MATOMO_TOKEN_AUTH is not a valid authorization key")

    method = os.getenv("MATOMO_METHOD", "GET").strip().upper()
    if method not in ("GET", "POST"):
        raise ConfigError(f"Unsupported tracking method: {method!r}")

    return Settings(
        api_url=api_url,
        id_site=id_site,
        timeout=timeout,
        method=method,
        token_auth=token_auth,
        token_length=token_length or None,
        blocking=_flag("MATOMO_BLOCKING", False),
        cookies_enabled=_flag("MATOMO_COOKIES", True),
        cookie_domain=os.getenv("MATOMO_COOKIE_DOMAIN", ""),
        cookie_path=os.getenv("MATOMO_COOKIE_PATH", "/") or "/",
        attribute=os.getenv("MATOMO_ATTRIBUTE", "tracker") or "tracker",
        log_file=os.getenv("MATOMO_LOG_FILE", "matomo-tracking.log"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
