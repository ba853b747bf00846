# src/config.py
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import structlog
from cryptography.fernet import Fernet

logger = structlog.get_logger(__name__)


class Platform(str, Enum):
    YOUTUBE = "youtube"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    TIKTOK = "tiktok"
    TWITCH = "twitch"


DEFAULT_SCOPES: Dict[Platform, Tuple[str, ...]] = {
    Platform.YOUTUBE: (
        "https://www.googleapis.com/auth/youtube.readonly",
        "https://www.googleapis.com/auth/yt-analytics.readonly",
    ),
    Platform.INSTAGRAM: (
        "pages_show_list",
        "pages_read_engagement",
        "instagram_basic",
        "instagram_manage_insights",
    ),
    Platform.FACEBOOK: (
        "pages_show_list",
        "pages_read_engagement",
        "read_insights",
    ),
    Platform.TIKTOK: ("user.info.basic", "user.info.stats", "video.list"),
    Platform.TWITCH: ("user:read:email", "moderator:read:followers", "channel:read:subscriptions"),
}

# env var names for (client id, client secret); instagram and facebook share the Meta app
CREDENTIAL_ENV: Dict[Platform, Tuple[str, str]] = {
    Platform.YOUTUBE: ("YT_CLIENT_ID", "YT_CLIENT_SECRET"),
    Platform.INSTAGRAM: ("FACEBOOK_APP_ID", "FACEBOOK_APP_SECRET"),
    Platform.FACEBOOK: ("FACEBOOK_APP_ID", "FACEBOOK_APP_SECRET"),
    Platform.TIKTOK: ("TIKTOK_CLIENT_KEY", "TIKTOK_CLIENT_SECRET"),
    Platform.TWITCH: ("TWITCH_CLIENT_ID", "TWITCH_CLIENT_SECRET"),
}


@dataclass(frozen=True)
class ProviderConfig:
    platform: Platform
    client_id: Optional[str]
    client_secret: Optional[str]
    redirect_uri: str
    scopes: Tuple[str, ...]
    state_ttl: int = 3600

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    @property
    def is_partial(self) -> bool:
        return not self.is_configured and bool(self.client_id or self.client_secret)


@dataclass(frozen=True)
class Settings:
    """
    Immutable runtime configuration.
    Built once at startup (see load_settings) and injected into the app factory.
    """

    database_url: str = "sqlite+aiosqlite:///./integrations.db"
    secret_key: str = "change_me_now"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    state_secret: str = "change_me_now"
    token_encryption_key: str = ""
    backend_url: str = "http://localhost:8000"
    client_origin: str = "/"
    environment: str = "development"
    http_timeout: float = 15.0
    token_refresh_margin: int = 30
    metrics_window_days: int = 30
    metrics_max_items: int = 25
    metrics_item_concurrency: int = 10
    demo_token_prefix: str = "demo_"
    providers: Mapping[Platform, ProviderConfig] = field(default_factory=dict)

    def provider(self, platform: Platform) -> Optional[ProviderConfig]:
        return self.providers.get(platform)

    def client_redirect(self, path: str, **params: str) -> str:
        base = self.client_origin.rstrip("/")
        query = urlencode({k: v for k, v in params.items() if v is not None})
        return f"{base}{path}?{query}" if query else f"{base}{path}"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("config_invalid_int", name=name, value=raw, default=default)
        return default


def _load_provider(env: Mapping[str, str], platform: Platform, backend_url: str, default_ttl: int) -> ProviderConfig:
    prefix = platform.value.upper()
    id_key, secret_key = CREDENTIAL_ENV[platform]
    client_id = env.get(id_key) or None
    client_secret = env.get(secret_key) or None
    if platform is Platform.TWITCH and not client_id:
        # legacy spelling used by older deployments
        client_id = env.get("TWICH_CLIENT_KEY") or None
        client_secret = client_secret or env.get("TWICH_CLIENT_SECRET") or None

    redirect_uri = env.get(f"{prefix}_REDIRECT_URI") or (
        f"{backend_url.rstrip('/')}/integrations/oauth/{platform.value}/callback"
    )
    raw_scopes = env.get(f"{prefix}_SCOPES")
    if raw_scopes:
        scopes = tuple(s.strip() for s in raw_scopes.replace(",", " ").split() if s.strip())
    else:
        scopes = DEFAULT_SCOPES[platform]

    return ProviderConfig(
        platform=platform,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        scopes=scopes,
        state_ttl=_env_int(env, f"{prefix}_STATE_TTL", default_ttl),
    )


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    environment = env.get("ENVIRONMENT", "development").lower()
    secret_key = env.get("SECRET_KEY", "change_me_now")
    backend_url = env.get("BACKEND_URL") or f"http://localhost:{env.get('PORT', '8000')}"
    default_ttl = _env_int(env, "OAUTH_STATE_TTL", 3600)

    token_key = env.get("OAUTH_TOKEN_KEY")
    if not token_key:
        # dev fallback (not for production): tokens stored with it are unreadable after a restart
        token_key = Fernet.generate_key().decode()
        logger.warning("oauth_token_key_generated", environment=environment)

    providers = {p: _load_provider(env, p, backend_url, default_ttl) for p in Platform}

    return Settings(
        database_url=env.get("DATABASE_URL") or Settings.database_url,
        secret_key=secret_key,
        algorithm=env.get("ALGORITHM", "HS256"),
        access_token_expire_minutes=_env_int(env, "ACCESS_TOKEN_EXPIRE_MINUTES", 15),
        state_secret=env.get("OAUTH_STATE_SECRET") or secret_key,
        token_encryption_key=token_key,
        backend_url=backend_url,
        client_origin=env.get("CLIENT_ORIGIN", "/"),
        environment=environment,
        http_timeout=float(env.get("HTTP_TIMEOUT_SECONDS") or 15.0),
        token_refresh_margin=_env_int(env, "TOKEN_REFRESH_MARGIN_SECONDS", 30),
        metrics_window_days=_env_int(env, "METRICS_WINDOW_DAYS", 30),
        metrics_max_items=_env_int(env, "METRICS_MAX_ITEMS", 25),
        metrics_item_concurrency=_env_int(env, "METRICS_ITEM_CONCURRENCY", 10),
        demo_token_prefix=env.get("DEMO_TOKEN_PREFIX", "demo_"),
        providers=providers,
    )


def log_configuration_summary(settings: Settings) -> None:
    configured, partial, missing = [], [], []
    for platform, cfg in settings.providers.items():
        if cfg.is_configured:
            configured.append(platform.value)
        elif cfg.is_partial:
            partial.append(platform.value)
        else:
            missing.append(platform.value)
    for name in partial:
        logger.warning("provider_partially_configured", platform=name)
    if settings.secret_key == "change_me_now" and settings.environment != "development":
        logger.warning("insecure_secret_key", environment=settings.environment)
    logger.info("providers_configured", configured=configured, partial=partial, missing=missing)
