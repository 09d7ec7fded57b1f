"""
=============================================================================
CABINEX - Canal Lateral de Telegram
=============================================================================
- Verificación del widget de login de Telegram (HMAC-SHA256)
- Registro/actualización de usuarios de Telegram y vínculo con un cabinet
- Notificaciones al canal de operaciones vía Bot API (sendMessage)

Las notificaciones nunca hacen fallar la operación que las origina: los
errores se registran y se descartan.
=============================================================================
"""

import hashlib
import hmac
import logging
from datetime import datetime
from html import escape
from typing import Any, Dict, List, Mapping, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import SecurityConfig, Settings
from ..exceptions import AuthError, ConflictError, NotFoundError, ValidationError
from ..models import TelegramUser, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# NOTIFICADOR (Bot API)
# =============================================================================

class TelegramNotifier:
    """Envía mensajes HTML a un canal. Sin token o canal es un no-op."""

    def __init__(
        self,
        bot_token: Optional[str],
        channel_id: Optional[str],
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        self.channel_id = channel_id
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "TelegramNotifier":
        return cls(
            bot_token=settings.bot_token(),
            channel_id=settings.telegram_channel_id,
            api_base=settings.telegram_api_base,
            timeout=settings.telegram_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.channel_id)

    async def send_message(self, text: str) -> bool:
        if not self.enabled:
            logger.info("[TELEGRAM] No configurado, mensaje omitido")
            return False

        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.channel_id, "text": text, "parse_mode": "HTML"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.error("[TELEGRAM] Error de conexión: %s", exc)
            return False

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200 or not data.get("ok"):
            logger.error(
                "[TELEGRAM] Error de la API (%s): %s",
                response.status_code, data.get("description") or response.text,
            )
            return False
        return True


def _format_time(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC")


def build_ip_change_message(
    cabinet: str,
    previous_ip: str,
    new_ip: str,
    user_agent: Optional[str] = None,
    moment: Optional[datetime] = None,
) -> str:
    lines = [
        "🔐 <b>NUEVO LOGIN DESDE OTRA IP</b>",
        "",
        f"👤 Cabinet: <code>{escape(cabinet)}</code>",
        f"🌐 IP anterior: <code>{escape(previous_ip)}</code>",
        f"🌐 IP nueva: <code>{escape(new_ip)}</code>",
        f"🕐 Hora: {_format_time(moment or utcnow())}",
    ]
    if user_agent:
        lines += ["", f"📱 Dispositivo: {escape(user_agent[:SecurityConfig.USER_AGENT_PREVIEW])}"]
    return "\n".join(lines)


def build_test_message(moment: Optional[datetime] = None) -> str:
    return "\n".join([
        "🧪 <b>MENSAJE DE PRUEBA</b>",
        "",
        "✅ El bot de Telegram está configurado correctamente",
        f"🕐 Hora: {_format_time(moment or utcnow())}",
    ])


# =============================================================================
# LOGIN CON TELEGRAM
# =============================================================================

def build_data_check_string(payload: Mapping[str, Any]) -> str:
    """Líneas "clave=valor" de todos los campos salvo `hash`, ordenadas y unidas por \\n."""
    lines = [
        f"{key}={value}"
        for key, value in payload.items()
        if key != "hash" and value is not None
    ]
    return "\n".join(sorted(lines))


def verify_telegram_auth(payload: Mapping[str, Any], bot_token: Optional[str]) -> bool:
    received = payload.get("hash")
    if not received or not bot_token:
        return False

    secret_key = hashlib.sha256(bot_token.encode("utf-8")).digest()
    expected = hmac.new(
        secret_key,
        build_data_check_string(payload).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, str(received))


def _user_info(user: TelegramUser) -> Dict[str, Any]:
    return {
        "telegram_id": user.telegram_id,
        "cabinet": user.cabinet,
        "first_name": user.first_name,
        "username": user.username,
        "photo_url": user.photo_url,
        "has_cabinet": bool(user.cabinet),
    }


async def telegram_login(
    db: AsyncSession,
    payload: Mapping[str, Any],
    bot_token: Optional[str],
) -> Dict[str, Any]:
    """Verifica la firma y registra (o actualiza) al usuario de Telegram."""
    if not verify_telegram_auth(payload, bot_token):
        logger.warning("[TELEGRAM] Firma inválida para id=%s", payload.get("id"))
        raise AuthError("Autenticación de Telegram inválida")

    try:
        telegram_id = int(payload["id"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("Falta el id de Telegram")

    async with db.begin():
        user = await db.scalar(
            select(TelegramUser).where(TelegramUser.telegram_id == telegram_id)
        )
        if user is None:
            user = TelegramUser(telegram_id=telegram_id)
            db.add(user)
            logger.info("[TELEGRAM] Nuevo usuario %s", telegram_id)

        user.username = payload.get("username")
        user.first_name = payload.get("first_name")
        user.last_name = payload.get("last_name")
        user.photo_url = payload.get("photo_url")
        user.updated_at = utcnow()
        await db.flush()

    return {"success": True, "user": _user_info(user)}


async def bind_cabinet(db: AsyncSession, telegram_id: int, cabinet: str) -> Dict[str, Any]:
    """Vincula el cabinet al usuario; un cabinet solo puede tener un usuario."""
    if not cabinet or not cabinet.strip():
        raise ValidationError("Se requiere el cabinet")

    async with db.begin():
        taken = await db.scalar(
            select(TelegramUser.id).where(
                TelegramUser.cabinet == cabinet,
                TelegramUser.telegram_id != telegram_id,
            )
        )
        if taken is not None:
            raise ConflictError("Este cabinet ya está vinculado a otro usuario")

        user = await db.scalar(
            select(TelegramUser).where(TelegramUser.telegram_id == telegram_id)
        )
        if user is None:
            raise NotFoundError("Usuario de Telegram", telegram_id)

        user.cabinet = cabinet
        user.updated_at = utcnow()

    logger.info("[TELEGRAM] Usuario %s vinculado a %s", telegram_id, cabinet)
    return {"success": True, "cabinet": cabinet}


async def list_telegram_users(db: AsyncSession) -> List[Dict[str, Any]]:
    async with db.begin():
        result = await db.execute(
            select(TelegramUser).order_by(TelegramUser.created_at.desc(), TelegramUser.id.desc())
        )
        users = result.scalars().all()

    return [
        {
            "telegram_id": u.telegram_id,
            "cabinet": u.cabinet,
            "username": u.username,
            "first_name": u.first_name,
            "last_name": u.last_name,
            "created_at": u.created_at,
        }
        for u in users
    ]
