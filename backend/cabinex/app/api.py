"""
=============================================================================
CABINEX - Endpoints de Cabinetes
=============================================================================
API REST usada por los cabinetes:
- Autenticación por clave y sesiones (login / logout / heartbeat)
- Saldos, órdenes, solicitudes de órdenes y retiros
- Historial de operaciones
- Login con Telegram
=============================================================================
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..database import get_db_session
from . import exchange, history, ledger, security, telegram

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])
balances_router = APIRouter(prefix="/api/balances", tags=["Balances"])
orders_router = APIRouter(prefix="/api/orders", tags=["Orders"])
order_requests_router = APIRouter(prefix="/api/order-requests", tags=["Order Requests"])
withdrawals_router = APIRouter(prefix="/api/withdrawals", tags=["Withdrawals"])
history_router = APIRouter(prefix="/api/history", tags=["History"])
telegram_router = APIRouter(prefix="/api/telegram", tags=["Telegram"])

OK = {"success": True}


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_notifier(request: Request) -> telegram.TelegramNotifier:
    return request.app.state.notifier


# =============================================================================
# SCHEMAS
# =============================================================================

class LoginRequest(BaseModel):
    key: Optional[str] = None


class SessionRequest(BaseModel):
    """Body de logout / heartbeat."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")


class OrderCreateRequest(BaseModel):
    request_id: Optional[int] = None
    from_cabinet: str = Field(..., min_length=1, max_length=50)
    to_cabinet: str = Field(..., min_length=1, max_length=50)
    type: str = Field(..., min_length=1, max_length=20)
    amount_usdt: Decimal = Field(..., gt=0)
    amount_local: Optional[Decimal] = None
    card_number: Optional[str] = Field(default=None, max_length=100)
    iban: Optional[str] = Field(default=None, max_length=100)
    tax_number: Optional[str] = Field(default=None, max_length=100)
    cvu: Optional[str] = Field(default=None, max_length=100)
    full_name: Optional[str] = Field(default=None, max_length=200)
    note: Optional[str] = None


class OrderPayRequest(BaseModel):
    receipts: Optional[List[str]] = None


class HideRequest(BaseModel):
    cabinet: str = ""


class OrderRequestCreateRequest(BaseModel):
    from_cabinet: str = Field(..., min_length=1, max_length=50)
    to_cabinet: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., gt=0)
    type: str = Field(..., min_length=1, max_length=20)


class WithdrawalCreateRequest(BaseModel):
    from_cabinet: str = Field(..., min_length=1, max_length=50)
    to_cabinet: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., gt=0)
    address: str = Field(..., min_length=1)


class WithdrawalConfirmRequest(BaseModel):
    txid: Optional[str] = None


class TelegramBindRequest(BaseModel):
    telegram_id: int
    cabinet: str


# =============================================================================
# AUTENTICACIÓN
# =============================================================================

@auth_router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
    notifier: telegram.TelegramNotifier = Depends(get_notifier),
):
    """
    Login por clave. Los rechazos responden 200 con success=false.
    Si la IP cambió respecto al último login exitoso se notifica por
    Telegram después de responder.
    """
    outcome = await security.login(
        db,
        body.key,
        ip_address=security.resolve_client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )

    if outcome.success and outcome.ip_changed:
        background_tasks.add_task(
            notifier.send_message,
            telegram.build_ip_change_message(
                outcome.cabinet,
                outcome.previous_ip,
                outcome.ip_address,
                outcome.user_agent,
            ),
        )

    return outcome.to_response()


@auth_router.post("/logout")
async def logout(body: SessionRequest, db: AsyncSession = Depends(get_db_session)):
    await security.logout(db, body.session_id)
    return OK


@auth_router.post("/heartbeat")
async def heartbeat(body: SessionRequest, db: AsyncSession = Depends(get_db_session)):
    return {"valid": await security.heartbeat(db, body.session_id)}


# =============================================================================
# SALDOS
# =============================================================================

@balances_router.get("/{cabinet}")
async def get_cabinet_balances(
    cabinet: str,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
):
    """Saldo con signo frente a cada otro cabinet (0 si no hay fila)."""
    return await ledger.balances_for_cabinet(db, cabinet, settings.cabinets)


# =============================================================================
# ÓRDENES
# =============================================================================

@orders_router.get("/{cabinet}")
async def list_orders(cabinet: str, db: AsyncSession = Depends(get_db_session)):
    orders = await exchange.list_orders_for_cabinet(db, cabinet)
    return [o.to_dict() for o in orders]


@orders_router.post("")
async def create_order(body: OrderCreateRequest, db: AsyncSession = Depends(get_db_session)):
    details = body.model_dump(
        include=set(exchange.PAYMENT_DETAIL_FIELDS),
        exclude_none=True,
    )
    order = await exchange.create_order(
        db,
        from_cabinet=body.from_cabinet,
        to_cabinet=body.to_cabinet,
        order_type=body.type,
        amount_usdt=body.amount_usdt,
        request_id=body.request_id,
        **details,
    )
    return order.to_dict()


@orders_router.patch("/{order_id}/pay")
async def pay_order(
    order_id: int,
    body: Optional[OrderPayRequest] = None,
    db: AsyncSession = Depends(get_db_session),
):
    receipts = body.receipts if body else None
    await exchange.settle_order(db, order_id, receipts)
    return OK


@orders_router.patch("/{order_id}/cancel")
async def cancel_order(order_id: int, db: AsyncSession = Depends(get_db_session)):
    await exchange.cancel_order(db, order_id)
    return OK


@orders_router.post("/{order_id}/hide")
async def hide_order(order_id: int, body: HideRequest, db: AsyncSession = Depends(get_db_session)):
    await exchange.hide_order(db, body.cabinet, order_id)
    return OK


# =============================================================================
# SOLICITUDES DE ÓRDENES
# =============================================================================

@order_requests_router.get("")
async def list_order_requests(db: AsyncSession = Depends(get_db_session)):
    requests = await exchange.list_active_order_requests(db)
    return [r.to_dict() for r in requests]


@order_requests_router.post("")
async def create_order_request(
    body: OrderRequestCreateRequest,
    db: AsyncSession = Depends(get_db_session),
):
    order_request = await exchange.create_order_request(
        db, body.from_cabinet, body.to_cabinet, body.amount, body.type
    )
    return order_request.to_dict()


@order_requests_router.delete("/{request_id}")
async def cancel_order_request(request_id: int, db: AsyncSession = Depends(get_db_session)):
    await exchange.cancel_order_request(db, request_id)
    return OK


# =============================================================================
# RETIROS
# =============================================================================

@withdrawals_router.get("/{cabinet}")
async def list_withdrawals(cabinet: str, db: AsyncSession = Depends(get_db_session)):
    withdrawals = await exchange.list_withdrawals_for_cabinet(db, cabinet)
    return [w.to_dict() for w in withdrawals]


@withdrawals_router.post("")
async def create_withdrawal(
    body: WithdrawalCreateRequest,
    db: AsyncSession = Depends(get_db_session),
):
    withdrawal = await exchange.create_withdrawal(
        db, body.from_cabinet, body.to_cabinet, body.amount, body.address
    )
    return withdrawal.to_dict()


@withdrawals_router.patch("/{withdrawal_id}/confirm")
async def confirm_withdrawal(
    withdrawal_id: int,
    body: Optional[WithdrawalConfirmRequest] = None,
    db: AsyncSession = Depends(get_db_session),
):
    await exchange.confirm_withdrawal(db, withdrawal_id, body.txid if body else None)
    return OK


@withdrawals_router.delete("/{withdrawal_id}")
async def delete_withdrawal(withdrawal_id: int, db: AsyncSession = Depends(get_db_session)):
    await exchange.delete_withdrawal(db, withdrawal_id)
    return OK


@withdrawals_router.post("/{withdrawal_id}/hide")
async def hide_withdrawal(
    withdrawal_id: int,
    body: HideRequest,
    db: AsyncSession = Depends(get_db_session),
):
    await exchange.hide_withdrawal(db, body.cabinet, withdrawal_id)
    return OK


# =============================================================================
# HISTORIAL
# =============================================================================

@history_router.get("/{cabinet}")
async def get_cabinet_history(cabinet: str, db: AsyncSession = Depends(get_db_session)):
    """Órdenes pagadas, retiros confirmados y ajustes de admin del cabinet."""
    return await history.collect_history(db, cabinet=cabinet, completed_only=True)


# =============================================================================
# TELEGRAM
# =============================================================================

@telegram_router.post("/login")
async def telegram_login(
    payload: Dict[str, Any],
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
):
    """Payload del widget de login; firma inválida -> 401."""
    return await telegram.telegram_login(db, payload, settings.bot_token())


@telegram_router.post("/bind-cabinet")
async def bind_telegram_cabinet(
    body: TelegramBindRequest,
    db: AsyncSession = Depends(get_db_session),
):
    return await telegram.bind_cabinet(db, body.telegram_id, body.cabinet)


@telegram_router.get("/users")
async def list_telegram_users(db: AsyncSession = Depends(get_db_session)):
    return await telegram.list_telegram_users(db)
