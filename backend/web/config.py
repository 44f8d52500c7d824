"""
Configuration and startup security checks for the Cinderella chat backend.

Why: In education contexts we must prevent accidental insecure deployments.
This module collects the chat settings from the environment and provides a
single guard that enforces minimal production safety constraints without
burdening local development.

Permissions: The caller needs no special privileges. The functions simply read
environment variables; the guard raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

from dataclasses import dataclass
import os

from backend.identity_access.tokens import DEFAULT_DEV_SECRET
from backend.messaging.session import DUPLICATE_POLICIES, SessionPolicy

MAX_MESSAGE_LENGTH_DEFAULT = 5000
MAX_MESSAGE_LENGTH_CONTRACT = 20000


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _env_flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "on")


def _parse_int_env(name: str, default: int, *, contract_max: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    if isinstance(contract_max, int) and contract_max > 0:
        value = min(value, contract_max)
    return value


def messages_dsn() -> str:
    return (os.getenv("MESSAGES_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip()


@dataclass(frozen=True)
class ChatSettings:
    environment: str
    messages_backend: str
    auto_migrate: bool
    duplicate_sessions: str
    snapshot_includes_self: bool
    require_token: bool
    jwt_secret: str
    max_message_length: int
    cors_origins: tuple[str, ...]

    @property
    def prod_like(self) -> bool:
        return _is_prod_like(self.environment)

    def session_policy(self) -> SessionPolicy:
        return SessionPolicy(
            duplicate_sessions=self.duplicate_sessions,
            snapshot_includes_self=self.snapshot_includes_self,
            require_token=self.require_token,
            token_secret=self.jwt_secret,
            max_message_length=self.max_message_length,
        )


def load_chat_settings() -> ChatSettings:
    """Read chat settings from the environment with lenient parsing.

    Unknown values fall back to defaults: the store backend defaults to `db`
    when a DSN is configured and `memory` otherwise; the duplicate-session
    policy defaults to `evict`.
    """
    backend = (os.getenv("MESSAGES_BACKEND") or "").strip().lower()
    if backend not in ("db", "memory"):
        backend = "db" if messages_dsn() else "memory"
    duplicate = (os.getenv("CHAT_DUPLICATE_SESSION_POLICY") or "evict").strip().lower()
    if duplicate not in DUPLICATE_POLICIES:
        duplicate = "evict"
    origins_raw = os.getenv("CORS_ALLOW_ORIGINS", "*") or ""
    origins = tuple(o.strip() for o in origins_raw.split(",") if o.strip())
    return ChatSettings(
        environment=(os.getenv("CINDERELLA_ENV", "dev") or "dev").lower(),
        messages_backend=backend,
        auto_migrate=_env_flag("MESSAGES_AUTO_MIGRATE"),
        duplicate_sessions=duplicate,
        snapshot_includes_self=_env_flag("CHAT_SNAPSHOT_INCLUDES_SELF", "true"),
        require_token=_env_flag("CHAT_REQUIRE_TOKEN"),
        jwt_secret=(os.getenv("JWT_SECRET") or DEFAULT_DEV_SECRET).strip(),
        max_message_length=_parse_int_env(
            "CHAT_MAX_MESSAGE_LENGTH", MAX_MESSAGE_LENGTH_DEFAULT, contract_max=MAX_MESSAGE_LENGTH_CONTRACT
        ),
        cors_origins=origins,
    )


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - JWT_SECRET must be set and not the development placeholder.
    - CHAT_REQUIRE_TOKEN must be true (no self-declared identities).
    - Messages must be persisted in Postgres (MESSAGES_BACKEND=db with a DSN).
    - The DSN must not explicitly disable TLS.
    """
    env = os.getenv("CINDERELLA_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    # 1) Token signing key
    secret = (os.getenv("JWT_SECRET") or "").strip()
    if not secret or secret == DEFAULT_DEV_SECRET or secret.upper().startswith("CHANGE_ME"):
        raise SystemExit(
            "Refusing to start: JWT_SECRET is unset or a placeholder in production."
        )

    # 2) Identity must come from verified tokens
    if not _env_flag("CHAT_REQUIRE_TOKEN"):
        raise SystemExit(
            "Refusing to start: CHAT_REQUIRE_TOKEN=true is mandatory in production/staging."
        )

    # 3) Durable message store
    settings = load_chat_settings()
    dsn = messages_dsn()
    if settings.messages_backend != "db" or not dsn:
        raise SystemExit(
            "Refusing to start: messages must be stored in Postgres in production (set MESSAGES_BACKEND=db and DATABASE_URL)."
        )

    # 4) Postgres TLS: basic guard to avoid explicit disable
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )
