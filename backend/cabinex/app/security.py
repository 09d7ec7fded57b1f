"""
=============================================================================
CABINEX - Control de Acceso (Claves y Sesiones)
=============================================================================
Autenticación por clave compartida con una sola sesión activa por cabinet.

Implementa:
- Login con registro de cada intento (success / rejected / invalid_key)
- Detección de cambio de IP respecto al último login exitoso
- Heartbeat, logout y logout forzado por administrador
- Barrido periódico de sesiones inactivas
- Administración de claves de acceso
=============================================================================
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import SecurityConfig
from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models import AccessKey, CabinetSession, LoginLog, LoginStatus, utcnow

logger = logging.getLogger(__name__)

INVALID_KEY_MESSAGE = "Clave de acceso inválida"
SESSION_EXISTS_MESSAGE = "Este cabinet ya está siendo usado por otro usuario"


@dataclass
class LoginOutcome:
    """Resultado de un intento de login."""
    status: LoginStatus
    cabinet: Optional[str] = None
    session_id: Optional[str] = None

    ip_address: str = SecurityConfig.UNKNOWN_IP
    user_agent: str = ""

    # IP del último login exitoso, solo si difiere de la actual
    ip_changed: bool = False
    previous_ip: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == LoginStatus.SUCCESS

    def to_response(self) -> Dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "cabinet": self.cabinet,
                "sessionId": self.session_id,
                "ipChanged": self.ip_changed,
            }
        if self.status == LoginStatus.REJECTED_SESSION_EXISTS:
            return {"success": False, "error": SESSION_EXISTS_MESSAGE}
        return {"success": False, "error": INVALID_KEY_MESSAGE}


def resolve_client_ip(request: Request) -> str:
    """
    IP del cliente detrás de proxy: primer salto de X-Forwarded-For,
    luego X-Real-IP, luego el peer del socket.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return SecurityConfig.UNKNOWN_IP


def _login_log(cabinet: str, ip_address: str, user_agent: str, status: LoginStatus) -> LoginLog:
    return LoginLog(cabinet=cabinet, ip_address=ip_address, user_agent=user_agent, status=status)


# =============================================================================
# LOGIN / SESIONES
# =============================================================================

async def login(
    db: AsyncSession,
    key: Optional[str],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> LoginOutcome:
    """
    Valida la clave y abre la sesión del cabinet.

    Si el cabinet ya tiene sesión el login se RECHAZA (la sesión existente
    no se reemplaza). La restricción única sobre sessions.cabinet resuelve
    dos logins simultáneos: el que pierde la carrera se registra como
    rejected_session_exists.
    """
    ip_address = ip_address or SecurityConfig.UNKNOWN_IP
    user_agent = user_agent or ""
    cabinet: Optional[str] = None

    try:
        async with db.begin():
            access_key = None
            if key:
                access_key = await db.scalar(
                    select(AccessKey).where(
                        AccessKey.access_key == key,
                        AccessKey.is_active.is_(True),
                    )
                )

            if access_key is None:
                db.add(_login_log(SecurityConfig.UNKNOWN_CABINET, ip_address, user_agent, LoginStatus.INVALID_KEY))
                logger.warning("[AUTH] Clave inválida desde %s", ip_address)
                return LoginOutcome(LoginStatus.INVALID_KEY, ip_address=ip_address, user_agent=user_agent)

            cabinet = access_key.cabinet
            existing = await db.scalar(
                select(CabinetSession.id).where(CabinetSession.cabinet == cabinet)
            )
            if existing is not None:
                db.add(_login_log(cabinet, ip_address, user_agent, LoginStatus.REJECTED_SESSION_EXISTS))
                logger.warning("[AUTH] Login rechazado para %s: sesión activa", cabinet)
                return LoginOutcome(
                    LoginStatus.REJECTED_SESSION_EXISTS,
                    cabinet=cabinet,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )

            previous_ip = await db.scalar(
                select(LoginLog.ip_address)
                .where(LoginLog.cabinet == cabinet, LoginLog.status == LoginStatus.SUCCESS)
                .order_by(LoginLog.created_at.desc(), LoginLog.id.desc())
                .limit(1)
            )

            session_id = secrets.token_hex(SecurityConfig.SESSION_TOKEN_BYTES)
            db.add(CabinetSession(
                cabinet=cabinet,
                session_id=session_id,
                ip_address=ip_address,
                user_agent=user_agent,
            ))
            db.add(_login_log(cabinet, ip_address, user_agent, LoginStatus.SUCCESS))
            access_key.last_used = utcnow()
            await db.flush()

    except IntegrityError:
        if cabinet is None:
            raise
        logger.warning("[AUTH] Login concurrente para %s, sesión ya creada", cabinet)
        async with db.begin():
            db.add(_login_log(cabinet, ip_address, user_agent, LoginStatus.REJECTED_SESSION_EXISTS))
        return LoginOutcome(
            LoginStatus.REJECTED_SESSION_EXISTS,
            cabinet=cabinet,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    ip_changed = previous_ip is not None and previous_ip != ip_address
    logger.info("[AUTH] Login de %s desde %s (ip_changed=%s)", cabinet, ip_address, ip_changed)
    return LoginOutcome(
        LoginStatus.SUCCESS,
        cabinet=cabinet,
        session_id=session_id,
        ip_address=ip_address,
        user_agent=user_agent,
        ip_changed=ip_changed,
        previous_ip=previous_ip if ip_changed else None,
    )


async def heartbeat(db: AsyncSession, session_id: Optional[str]) -> bool:
    """Renueva last_activity. Nunca lanza: ante error la sesión se reporta inválida."""
    if not session_id:
        return False
    try:
        async with db.begin():
            result = await db.execute(
                update(CabinetSession)
                .where(CabinetSession.session_id == session_id)
                .values(last_activity=utcnow())
            )
            return result.rowcount > 0
    except SQLAlchemyError:
        logger.exception("[SESSIONS] Error en heartbeat")
        return False


async def logout(db: AsyncSession, session_id: Optional[str]) -> bool:
    """Elimina la sesión. Idempotente: devuelve si existía."""
    if not session_id:
        return False
    async with db.begin():
        result = await db.execute(
            delete(CabinetSession).where(CabinetSession.session_id == session_id)
        )
    removed = result.rowcount > 0
    if removed:
        logger.info("[SESSIONS] Logout de sesión %s...", session_id[:8])
    return removed


async def force_logout(db: AsyncSession, cabinet: str) -> bool:
    async with db.begin():
        result = await db.execute(
            delete(CabinetSession).where(CabinetSession.cabinet == cabinet)
        )
    removed = result.rowcount > 0
    logger.info("[SESSIONS] Logout forzado de %s (había sesión: %s)", cabinet, removed)
    return removed


async def sweep_idle_sessions(db: AsyncSession, idle_seconds: int) -> int:
    """Borra las sesiones sin actividad en los últimos `idle_seconds`."""
    cutoff = utcnow() - timedelta(seconds=idle_seconds)
    async with db.begin():
        result = await db.execute(
            delete(CabinetSession).where(CabinetSession.last_activity < cutoff)
        )
    if result.rowcount:
        logger.info("[SESSIONS] %s sesiones inactivas eliminadas", result.rowcount)
    return result.rowcount


async def run_session_sweeper(
    session_factory: async_sessionmaker[AsyncSession],
    interval_seconds: int,
    idle_seconds: int,
) -> None:
    """Bucle de fondo del lifespan; sobrevive a errores de la base de datos."""
    logger.info(
        "[SESSIONS] Barrido cada %ss (inactividad máxima %ss)",
        interval_seconds, idle_seconds,
    )
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            async with session_factory() as db:
                await sweep_idle_sessions(db, idle_seconds)
        except Exception:
            logger.exception("[SESSIONS] Error limpiando sesiones")


# =============================================================================
# ADMINISTRACIÓN DE CLAVES
# =============================================================================

async def list_access_keys(db: AsyncSession) -> List[AccessKey]:
    async with db.begin():
        result = await db.execute(select(AccessKey).order_by(AccessKey.cabinet, AccessKey.id))
        return list(result.scalars().all())


async def create_access_key(
    db: AsyncSession,
    access_key: str,
    cabinet: str,
    description: Optional[str] = None,
) -> AccessKey:
    if not access_key or not access_key.strip():
        raise ValidationError("La clave es obligatoria")
    if not cabinet or not cabinet.strip():
        raise ValidationError("El cabinet es obligatorio")

    record = AccessKey(
        access_key=access_key.strip(),
        cabinet=cabinet.strip(),
        description=description,
        is_active=True,
    )
    try:
        async with db.begin():
            db.add(record)
            await db.flush()
    except IntegrityError:
        raise ConflictError("Esta clave ya existe")

    logger.info("[AUTH] Clave %s creada para %s", record.id, record.cabinet)
    return record


async def set_access_key_active(db: AsyncSession, key_id: int, active: bool) -> AccessKey:
    async with db.begin():
        record = await db.get(AccessKey, key_id)
        if record is None:
            raise NotFoundError("Clave de acceso", key_id)
        record.is_active = active

    logger.info("[AUTH] Clave %s %s", key_id, "activada" if active else "desactivada")
    return record


async def delete_access_key(db: AsyncSession, key_id: int) -> None:
    async with db.begin():
        record = await db.get(AccessKey, key_id)
        if record is None:
            raise NotFoundError("Clave de acceso", key_id)
        await db.delete(record)

    logger.info("[AUTH] Clave %s eliminada", key_id)
