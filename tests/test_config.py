import pytest
from pydantic import ValidationError as PydanticValidationError

from cabinex.config import LedgerConfig, Settings


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.cabinets == LedgerConfig.DEFAULT_CABINETS
    assert settings.session_idle_timeout_seconds == 3600
    assert not settings.telegram_enabled
    assert settings.bot_token() is None


@pytest.mark.parametrize("raw,expected", [
    ("postgres://u:p@db:5432/app", "postgresql+asyncpg://u:p@db:5432/app"),
    ("postgresql://u:p@db/app?sslmode=require", "postgresql+asyncpg://u:p@db/app?ssl=require"),
    ("sqlite+aiosqlite:///./x.db", "sqlite+aiosqlite:///./x.db"),
])
def test_database_url_uses_async_driver(raw, expected):
    assert Settings(_env_file=None, DATABASE_URL=raw).database_url == expected


def test_env_cabinets_json(monkeypatch):
    monkeypatch.setenv("CABINETS", '["A", "B"]')
    assert Settings(_env_file=None).cabinets == ["A", "B"]


def test_duplicate_cabinets_rejected():
    with pytest.raises(PydanticValidationError):
        Settings(_env_file=None, CABINETS=["A", "A"])


def test_telegram_enabled_needs_token_and_channel():
    settings = Settings(_env_file=None, TELEGRAM_BOT_TOKEN="1:x", TELEGRAM_CHANNEL_ID="-100")
    assert settings.telegram_enabled
    assert settings.bot_token() == "1:x"
