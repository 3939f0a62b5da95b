import pytest

from card_trader.config import load_settings

ENV_VARS = (
    "DISCORD_TOKEN",
    "TRADER_DB_PATH",
    "PROPOSAL_TTL_HOURS",
    "AGREEMENT_TTL_HOURS",
    "TRUST_QUEUE_LIMIT",
    "TRUST_BATCH_SIZE",
    "TRUST_WORKER_MINUTES",
    "X_BEARER_TOKEN",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_token():
    settings = load_settings(require_token=False)

    assert settings.discord_token == ""
    assert settings.proposal_ttl_hours == 72
    assert settings.agreement_ttl_hours == 168
    assert settings.trust_queue_limit == 1000
    assert settings.x_bearer_token is None
    assert settings.log_level == "INFO"


def test_token_required_for_bot():
    with pytest.raises(RuntimeError):
        load_settings()


def test_overrides(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "abc")
    monkeypatch.setenv("PROPOSAL_TTL_HOURS", "24")
    monkeypatch.setenv("TRUST_BATCH_SIZE", "10")
    monkeypatch.setenv("X_BEARER_TOKEN", "bearer")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = load_settings()

    assert settings.discord_token == "abc"
    assert settings.proposal_ttl_hours == 24
    assert settings.trust_batch_size == 10
    assert settings.x_bearer_token == "bearer"
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("value", ["soon", "0", "-5"])
def test_bad_numbers_are_rejected(monkeypatch, value):
    monkeypatch.setenv("AGREEMENT_TTL_HOURS", value)

    with pytest.raises(RuntimeError):
        load_settings(require_token=False)
