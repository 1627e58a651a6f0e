from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, TypeVar

from .errors import ConfigError
from .helpers import env_flag
from .tokens import DELIMITER

T = TypeVar("T")


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_EVENT_ID = "default-event"
DEFAULT_EVENT_NAME = "Event"
DEFAULT_TICKET_TYPE = "Standard"
DEFAULT_QR_SIZE = 600


def _num(env: Mapping[str, str], name: str, default: T,
         cast: Callable[[str], T]) -> T:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(
            [name], f"{name} must be a number, got {raw!r}"
        ) from None


@dataclass(frozen=True)
class Settings:
    ticket_secret: str
    store_backend: str = "sql"  # 'sql' | 'redis'
    database_url: Optional[str] = None
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: float = 30.0
    db_gate_limit: Optional[int] = None  # default: pool size
    redis_url: Optional[str] = None
    redis_max_conn: int = 64

    event_id: str = DEFAULT_EVENT_ID
    event_name: str = DEFAULT_EVENT_NAME

    qr_enabled: bool = True
    qr_size: int = DEFAULT_QR_SIZE

    mail_enabled: bool = True
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    smtp_from: Optional[str] = None
    smtp_timeout: float = 20.0

    step_timeout: float = 30.0
    # a claim that never produced a ticket may be taken over after this
    order_claim_ttl: float = 300.0
    admin_token: Optional[str] = None
    debug_endpoints: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        backend = env.get("TICKETSTORE_BACKEND", "sql").strip().lower()
        settings = cls(
            ticket_secret=env.get("TICKET_SECRET", ""),
            store_backend=backend,
            database_url=env.get("DATABASE_URL") or None,
            db_pool_size=_num(env, "DB_POOL_SIZE", 10, int),
            db_max_overflow=_num(env, "DB_MAX_OVERFLOW", 10, int),
            db_pool_timeout=_num(env, "DB_POOL_TIMEOUT", 30.0, float),
            db_gate_limit=_num(env, "DB_GATE_LIMIT", None, int),
            redis_url=env.get("REDIS_URL") or None,
            redis_max_conn=_num(env, "REDIS_MAX_CONN", 64, int),
            event_id=env.get("EVENT_ID") or DEFAULT_EVENT_ID,
            event_name=env.get("EVENT_NAME") or DEFAULT_EVENT_NAME,
            qr_enabled=env_flag(env.get("QR_ENABLED"), default=True),
            qr_size=_num(env, "QR_SIZE", DEFAULT_QR_SIZE, int),
            mail_enabled=env_flag(env.get("MAIL_ENABLED"), default=True),
            smtp_host=env.get("SMTP_HOST") or None,
            smtp_port=_num(env, "SMTP_PORT", 587, int),
            smtp_user=env.get("SMTP_USER") or None,
            smtp_pass=env.get("SMTP_PASS") or None,
            smtp_from=env.get("SMTP_FROM") or None,
            smtp_timeout=_num(env, "SMTP_TIMEOUT", 20.0, float),
            step_timeout=_num(env, "STEP_TIMEOUT_SECONDS", 30.0, float),
            order_claim_ttl=_num(env, "ORDER_CLAIM_TTL", 300.0, float),
            admin_token=env.get("ADMIN_TOKEN") or None,
            debug_endpoints=env_flag(env.get("DEBUG_ENDPOINTS")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
        settings.check()
        return settings

    def check(self) -> None:
        """Fail fast on anything the service cannot run without."""
        missing = []
        if not self.ticket_secret:
            missing.append("TICKET_SECRET")
        if self.store_backend == "sql":
            if not self.database_url:
                missing.append("DATABASE_URL")
        elif self.store_backend == "redis":
            if not self.redis_url:
                missing.append("REDIS_URL")
        else:
            raise ConfigError(
                ["TICKETSTORE_BACKEND"],
                f"unknown TICKETSTORE_BACKEND {self.store_backend!r} "
                "(expected 'sql' or 'redis')",
            )
        if self.mail_enabled:
            if not self.smtp_host:
                missing.append("SMTP_HOST")
            if not self.smtp_from:
                missing.append("SMTP_FROM")
        if missing:
            raise ConfigError(missing)

        # event_id is a token segment
        if DELIMITER in self.event_id:
            raise ConfigError(
                ["EVENT_ID"],
                f"EVENT_ID must not contain {DELIMITER!r}: {self.event_id!r}",
            )
        if self.order_claim_ttl <= self.step_timeout:
            raise ConfigError(
                ["ORDER_CLAIM_TTL"],
                "ORDER_CLAIM_TTL must be longer than STEP_TIMEOUT_SECONDS",
            )
