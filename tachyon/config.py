import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_COMICS_DIR = "/opt/comics"
DEFAULT_PORT = 3001
DEFAULT_ORIGINS = ("http://localhost:5173", "http://localhost:4173")
SESSION_TTL = 7 * 24 * 60 * 60
SIGNED_URL_TTL = 365 * 24 * 60 * 60

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class OIDCConfig:
    issuer: str = "https://auth.example.com"
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:5173/callback"
    scope: str = "openid profile email"
    auth_url: str | None = None
    token_url: str | None = None
    userinfo_url: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.client_id)

    @property
    def authorization_endpoint(self) -> str:
        return self.auth_url or f"{self.issuer.rstrip('/')}/authorize"

    @property
    def token_endpoint(self) -> str:
        return self.token_url or f"{self.issuer.rstrip('/')}/token"

    @property
    def userinfo_endpoint(self) -> str:
        return self.userinfo_url or f"{self.issuer.rstrip('/')}/userinfo"


@dataclass(frozen=True)
class Settings:
    comics_dir: Path
    secret_key: str
    secret_generated: bool = False
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    cookie_domain: str | None = None
    cookie_secure: bool = False
    allowed_origins: tuple[str, ...] = DEFAULT_ORIGINS
    app_url: str = "/"
    auth_disabled: bool = False
    session_ttl: int = SESSION_TTL
    signed_url_ttl: int = SIGNED_URL_TTL
    watch_enabled: bool = True
    watch_interval: float = 2.0
    watch_stability: float = 2.0
    oidc: OIDCConfig = field(default_factory=OIDCConfig)

    @property
    def auth_mode(self) -> str:
        if self.auth_disabled:
            return "disabled"
        if self.oidc.configured:
            return "oidc"
        return "unconfigured"


def _get(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {raw!r}")


def _get_int(env: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative, got {value}")
    return value


def load_oidc_config(env: Mapping[str, str]) -> OIDCConfig:
    defaults = OIDCConfig()
    return OIDCConfig(
        issuer=_get(env, "OIDC_ISSUER") or defaults.issuer,
        client_id=_get(env, "OIDC_CLIENT_ID") or "",
        client_secret=_get(env, "OIDC_CLIENT_SECRET") or "",
        redirect_uri=_get(env, "OIDC_REDIRECT_URI") or defaults.redirect_uri,
        scope=_get(env, "OIDC_SCOPE") or defaults.scope,
        auth_url=_get(env, "OIDC_AUTH_URL"),
        token_url=_get(env, "OIDC_TOKEN_URL"),
        userinfo_url=_get(env, "OIDC_USERINFO_URL"),
    )


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """
    Build Settings from the process environment (after loading ./.env), or
    from an explicit mapping when one is given.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    secret = _get(env, "SECRET_KEY")
    secret_generated = secret is None
    if secret is None:
        secret = secrets.token_hex(32)
        logger.warning(
            "SECRET_KEY is not set; using a random secret. "
            "Sessions and signed URLs will not survive a restart."
        )

    origins_raw = _get(env, "ALLOWED_ORIGINS")
    if origins_raw is None:
        origins = DEFAULT_ORIGINS
    else:
        origins = tuple(o.strip() for o in origins_raw.split(",") if o.strip())

    comics_dir = _get(env, "COMICS_DIR") or DEFAULT_COMICS_DIR

    return Settings(
        comics_dir=Path(os.path.expanduser(comics_dir)).resolve(),
        secret_key=secret,
        secret_generated=secret_generated,
        host=_get(env, "HOST") or "0.0.0.0",
        port=_get_int(env, "PORT", DEFAULT_PORT, minimum=1),
        cookie_domain=_get(env, "COOKIE_DOMAIN"),
        cookie_secure=_get_bool(env, "COOKIE_SECURE", False),
        allowed_origins=origins,
        app_url=_get(env, "APP_URL") or "/",
        auth_disabled=_get_bool(env, "AUTH_DISABLED", False),
        session_ttl=_get_int(env, "SESSION_TTL", SESSION_TTL, minimum=1),
        signed_url_ttl=_get_int(env, "SIGNED_URL_TTL", SIGNED_URL_TTL, minimum=1),
        watch_enabled=_get_bool(env, "WATCH_ENABLED", True),
        watch_interval=_get_float(env, "WATCH_INTERVAL", 2.0),
        watch_stability=_get_float(env, "WATCH_STABILITY", 2.0),
        oidc=load_oidc_config(env),
    )
