"""
=============================================================================
CABINEX - Configuración
=============================================================================
Parámetros de entorno (DATABASE_URL, Telegram, sesiones) y constantes
operativas del libro de saldos.
=============================================================================
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# CONSTANTES DEL SISTEMA
# =============================================================================

class LedgerConfig:
    """Constantes del libro de saldos."""

    # Cabinetes de intercambio conocidos (los ADMIN no participan en saldos)
    DEFAULT_CABINETS = [
        "Кабінет 1 UA",
        "Кабінет 2 UA",
        "Кабінет 3 UA",
        "Кабінет 4 UA",
        "Кабінет 1 ARS",
        "Кабінет 2 ARS",
    ]

    AMOUNT_PRECISION = 12
    AMOUNT_SCALE = 2
    ZERO = Decimal("0.00")

    # Valor de filtro "todos los cabinetes" en el historial de admin
    ALL_CABINETS_FILTER = "all"


class SecurityConfig:
    """Umbrales de sesiones y autenticación."""

    SESSION_TOKEN_BYTES = 32                 # secrets.token_hex(32) -> 64 caracteres
    SESSION_IDLE_TIMEOUT = 3600              # Segundos sin actividad antes de expirar (1 hora)
    SESSION_SWEEP_INTERVAL = 3600            # Segundos entre barridos de sesiones
    UNKNOWN_CABINET = "unknown"              # Cabinet registrado para claves inválidas
    UNKNOWN_IP = "unknown"
    USER_AGENT_PREVIEW = 100                 # Caracteres del User-Agent en notificaciones


# =============================================================================
# SETTINGS (variables de entorno / .env)
# =============================================================================

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./cabinex.db", alias="DATABASE_URL"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    telegram_bot_token: Optional[SecretStr] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_channel_id: Optional[str] = Field(default=None, alias="TELEGRAM_CHANNEL_ID")
    telegram_api_base: str = Field(default="https://api.telegram.org", alias="TELEGRAM_API_BASE")
    telegram_timeout_seconds: float = Field(default=10.0, alias="TELEGRAM_TIMEOUT_SECONDS")

    auto_create_schema: bool = Field(default=True, alias="AUTO_CREATE_SCHEMA")
    session_idle_timeout_seconds: int = Field(
        default=SecurityConfig.SESSION_IDLE_TIMEOUT, alias="SESSION_IDLE_TIMEOUT_SECONDS"
    )
    session_sweep_interval_seconds: int = Field(
        default=SecurityConfig.SESSION_SWEEP_INTERVAL, alias="SESSION_SWEEP_INTERVAL_SECONDS"
    )

    cabinets: List[str] = Field(
        default_factory=lambda: list(LedgerConfig.DEFAULT_CABINETS), alias="CABINETS"
    )

    @staticmethod
    def normalize_database_url(value: str) -> str:
        """postgres:// y postgresql:// pasan a usar el driver asyncpg."""
        if value.startswith("postgresql://") or value.startswith("postgres://"):
            value = value.replace("postgres://", "postgresql://", 1)
            value = value.replace("postgresql://", "postgresql+asyncpg://", 1)
            # asyncpg no acepta sslmode, usa ssl
            value = value.replace("sslmode=", "ssl=")
        return value

    @field_validator("database_url")
    @classmethod
    def _async_driver(cls, value: str) -> str:
        return cls.normalize_database_url(value)

    @field_validator("cabinets")
    @classmethod
    def _non_empty_cabinets(cls, value: List[str]) -> List[str]:
        cleaned = [c.strip() for c in value if c and c.strip()]
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("CABINETS contiene nombres duplicados")
        return cleaned

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_channel_id)

    def bot_token(self) -> Optional[str]:
        if self.telegram_bot_token is None:
            return None
        return self.telegram_bot_token.get_secret_value()


@lru_cache
def get_settings() -> Settings:
    return Settings()
