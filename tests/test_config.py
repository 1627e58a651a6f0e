import pytest

from gatepass.config import Settings
from gatepass.errors import ConfigError


BASE = {
    "TICKET_SECRET": "s3cret",
    "DATABASE_URL": "sqlite:///./t.db",
    "SMTP_HOST": "smtp.example.com",
    "SMTP_FROM": "tickets@example.com",
}


def test_defaults():
    s = Settings.from_env(BASE)
    assert s.store_backend == "sql"
    assert s.event_id == "default-event"
    assert s.qr_size == 600
    assert s.mail_enabled is True
    assert s.admin_token is None
    assert s.debug_endpoints is False


def test_all_missing_names_are_reported():
    with pytest.raises(ConfigError) as ei:
        Settings.from_env({})
    assert ei.value.kind == "ENV_MISSING"
    assert ei.value.missing == [
        "DATABASE_URL", "SMTP_FROM", "SMTP_HOST", "TICKET_SECRET",
    ]


def test_mail_disabled_needs_no_smtp():
    s = Settings.from_env({
        "TICKET_SECRET": "s", "DATABASE_URL": "sqlite://",
        "MAIL_ENABLED": "0", "QR_ENABLED": "false",
    })
    assert (s.mail_enabled, s.qr_enabled) == (False, False)


def test_redis_backend_needs_redis_url():
    env = {**BASE, "TICKETSTORE_BACKEND": "redis"}
    with pytest.raises(ConfigError) as ei:
        Settings.from_env(env)
    assert ei.value.missing == ["REDIS_URL"]
    s = Settings.from_env({**env, "REDIS_URL": "redis://localhost:6379/0"})
    assert s.store_backend == "redis"


def test_unknown_backend():
    with pytest.raises(ConfigError) as ei:
        Settings.from_env({**BASE, "TICKETSTORE_BACKEND": "mongo"})
    assert ei.value.missing == ["TICKETSTORE_BACKEND"]


def test_event_id_must_fit_in_a_token():
    with pytest.raises(ConfigError) as ei:
        Settings.from_env({**BASE, "EVENT_ID": "fest.2026"})
    assert ei.value.missing == ["EVENT_ID"]
    assert Settings.from_env({**BASE, "EVENT_ID": "fest-2026"}).event_id == \
        "fest-2026"


@pytest.mark.parametrize("name, raw", [
    ("QR_SIZE", "abc"),
    ("SMTP_PORT", "25x"),
    ("STEP_TIMEOUT_SECONDS", "soon"),
    ("DB_GATE_LIMIT", "1.5"),
])
def test_bad_numbers_name_the_variable(name, raw):
    with pytest.raises(ConfigError) as ei:
        Settings.from_env({**BASE, name: raw})
    assert ei.value.missing == [name]
    assert raw in ei.value.message


def test_blank_numbers_fall_back_to_defaults():
    s = Settings.from_env({**BASE, "SMTP_PORT": "", "QR_SIZE": " "})
    assert (s.smtp_port, s.qr_size) == (587, 600)


def test_pool_and_gate_settings():
    s = Settings.from_env({
        **BASE, "DB_POOL_SIZE": "5", "DB_MAX_OVERFLOW": "2",
        "DB_POOL_TIMEOUT": "7.5", "DB_GATE_LIMIT": "3",
    })
    assert (s.db_pool_size, s.db_max_overflow, s.db_pool_timeout,
            s.db_gate_limit) == (5, 2, 7.5, 3)
    assert Settings.from_env(BASE).db_gate_limit is None


def test_order_claim_ttl_must_outlast_a_step():
    with pytest.raises(ConfigError) as ei:
        Settings.from_env({**BASE, "ORDER_CLAIM_TTL": "10",
                           "STEP_TIMEOUT_SECONDS": "30"})
    assert ei.value.missing == ["ORDER_CLAIM_TTL"]
