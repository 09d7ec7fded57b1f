"""
=============================================================================
CABINEX - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Libro de saldos entre pares de cabinetes y el ciclo de vida de órdenes,
solicitudes de órdenes y retiros que lo modifican.

Principios de Diseño:
- Un único registro dirigido por par no ordenado de cabinetes
- Liquidación exactamente una vez (guardas de estado + bloqueo de fila)
- Auditoría append-only de ajustes administrativos y de intentos de login
=============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    BigInteger,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import LedgerConfig


def utcnow() -> datetime:
    """Hora UTC sin zona (las columnas son TIMESTAMP sin zona horaria)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


Money = Numeric(LedgerConfig.AMOUNT_PRECISION, LedgerConfig.AMOUNT_SCALE)
JsonList = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# ENUMERACIONES DEL SISTEMA
# =============================================================================

class OrderStatus(str, PyEnum):
    """Estados de una orden. COMPLETED y CANCELLED son terminales."""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, PyEnum):
    """Estados de un retiro. COMPLETED es terminal."""
    PENDING = "pending"
    COMPLETED = "completed"


class LoginStatus(str, PyEnum):
    """Resultado registrado de cada intento de login."""
    SUCCESS = "success"
    REJECTED_SESSION_EXISTS = "rejected_session_exists"
    INVALID_KEY = "invalid_key"


class AdminAction(str, PyEnum):
    """Tipos de acción del log de administración."""
    BALANCE_UPDATE = "balance_update"


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, PyEnum):
                value = value.value
            data[column.key] = value
        return data


# =============================================================================
# TABLA: BALANCES (Saldos entre pares de cabinetes)
# =============================================================================

class Balance(Base):
    """
    Saldo dirigido entre dos cabinetes.

    CONVENCIÓN: `amount` en la fila (A, B) es el crédito de A frente a B.
    Visto desde B el mismo saldo es -amount. Solo existe una fila por par
    no ordenado; la fila (B, A) nunca se crea si ya existe (A, B).
    """
    __tablename__ = "balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cabinet_from: Mapped[str] = mapped_column(String(50), nullable=False)
    cabinet_to: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, default=LedgerConfig.ZERO, nullable=False)

    __table_args__ = (
        UniqueConstraint("cabinet_from", "cabinet_to", name="unique_balance_pair"),
        CheckConstraint("cabinet_from <> cabinet_to", name="check_balance_distinct_cabinets"),
    )

    def amount_for(self, cabinet: str) -> Decimal:
        """Saldo visto desde `cabinet`."""
        if cabinet == self.cabinet_from:
            return self.amount
        if cabinet == self.cabinet_to:
            return -self.amount
        raise ValueError(f"{cabinet} no participa en el saldo {self.id}")

    def counterparty(self, cabinet: str) -> str:
        return self.cabinet_to if cabinet == self.cabinet_from else self.cabinet_from


# =============================================================================
# TABLA: ORDERS (Órdenes de pago entre cabinetes)
# =============================================================================

class Order(Base):
    """
    Promesa de pago de `from_cabinet` a `to_cabinet` por `amount_usdt`.

    FLUJO:
    1. Se crea PENDING (descuenta la solicitud de origen si existe)
    2. Se paga -> COMPLETED, guarda comprobantes y ajusta el saldo
    3. O se cancela -> CANCELLED, devuelve el monto a la solicitud
    """
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    from_cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    to_cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Montos: USDT es la unidad canónica del libro
    amount_usdt: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount_local: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    # Datos de pago
    card_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    iban: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tax_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cvu: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False
    )
    receipts: Mapped[Optional[List[str]]] = mapped_column(JsonList, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("idx_orders_from_cabinet", "from_cabinet"),
        Index("idx_orders_to_cabinet", "to_cabinet"),
        Index("idx_orders_status", "status"),
        Index("idx_orders_created_at", "created_at"),
        CheckConstraint("amount_usdt > 0", name="check_order_amount_positive"),
    )


# =============================================================================
# TABLA: ORDER_REQUESTS (Solicitudes abiertas de órdenes)
# =============================================================================

class OrderRequest(Base):
    """
    Solicitud abierta de órdenes por un monto objetivo.
    `remaining_amount` baja con cada orden creada contra ella y puede quedar
    negativo; solo se lista mientras sea > 0. Cancelar la solicitud la borra.
    """
    __tablename__ = "order_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    to_cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("idx_order_requests_remaining", "remaining_amount"),
        CheckConstraint("amount > 0", name="check_order_request_amount_positive"),
    )


# =============================================================================
# TABLA: WITHDRAWALS (Retiros)
# =============================================================================

class Withdrawal(Base):
    """
    Solicitud de retiro de `from_cabinet` hacia `to_cabinet` a una dirección.
    Se permite aunque el saldo sea cero o negativo. Al confirmar se guarda el
    txid y se ajusta el saldo con la misma convención que el pago de órdenes.
    """
    __tablename__ = "withdrawals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    to_cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[WithdrawalStatus] = mapped_column(
        Enum(WithdrawalStatus),
        default=WithdrawalStatus.PENDING,
        nullable=False
    )
    txid: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("idx_withdrawals_from_cabinet", "from_cabinet"),
        Index("idx_withdrawals_to_cabinet", "to_cabinet"),
        Index("idx_withdrawals_status", "status"),
        CheckConstraint("amount > 0", name="check_withdrawal_amount_positive"),
    )


# =============================================================================
# TABLAS: HIDDEN_* (Ocultamiento local por cabinet)
# =============================================================================

class HiddenOrder(Base):
    """Marca de ocultamiento de una orden para un solo cabinet."""
    __tablename__ = "hidden_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("cabinet", "order_id", name="unique_hidden_order"),
    )


class HiddenWithdrawal(Base):
    """Marca de ocultamiento de un retiro para un solo cabinet."""
    __tablename__ = "hidden_withdrawals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    withdrawal_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("cabinet", "withdrawal_id", name="unique_hidden_withdrawal"),
    )


# =============================================================================
# TABLA: ADMIN_LOGS (Auditoría de ajustes administrativos)
# =============================================================================

class AdminLog(Base):
    """Registro inmutable de cada ajuste manual de saldo."""
    __tablename__ = "admin_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    admin_name: Mapped[str] = mapped_column(String(50), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    cabinet_from: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    cabinet_to: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount_old: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    amount_new: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("idx_admin_logs_action", "action_type"),
        Index("idx_admin_logs_created_at", "created_at"),
    )


# =============================================================================
# TABLAS: ACCESS_KEYS / SESSIONS / LOGIN_LOGS (Control de acceso)
# =============================================================================

class AccessKey(Base):
    """Clave compartida que identifica a un cabinet (o a un administrador)."""
    __tablename__ = "access_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    access_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    last_used: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class CabinetSession(Base):
    """
    Sesión activa de un cabinet. Como máximo una por cabinet, garantizado por
    la restricción única sobre `cabinet`.
    """
    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cabinet: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    session_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    last_activity: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("idx_sessions_last_activity", "last_activity"),
    )


class LoginLog(Base):
    """Registro append-only de cada intento de login."""
    __tablename__ = "login_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cabinet: Mapped[str] = mapped_column(String(50), nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[LoginStatus] = mapped_column(Enum(LoginStatus), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("idx_login_logs_cabinet_status", "cabinet", "status"),
        Index("idx_login_logs_created_at", "created_at"),
    )


# =============================================================================
# TABLA: TELEGRAM_USERS (Identidades de Telegram)
# =============================================================================

class TelegramUser(Base):
    """Usuario de Telegram verificado, opcionalmente vinculado a un cabinet."""
    __tablename__ = "telegram_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    cabinet: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )

    __table_args__ = (
        Index("idx_telegram_users_cabinet", "cabinet"),
    )
