"""
=============================================================================
CABINEX - Ciclo de Vida de Órdenes, Solicitudes y Retiros
=============================================================================
Máquinas de estado:

    Order:       PENDING -> COMPLETED | CANCELLED   (ambos terminales)
    Withdrawal:  PENDING -> COMPLETED               (terminal)
    OrderRequest: sin estado; se borra al cancelarse

La liquidación (pagar orden / confirmar retiro) bloquea la fila de la
entidad y la del saldo en la misma transacción, de modo que la guarda
"ya liquidado" y el ajuste del saldo son atómicos.
=============================================================================
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence, Type, Union

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import (
    AlreadySettledError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models import (
    HiddenOrder,
    HiddenWithdrawal,
    Order,
    OrderRequest,
    OrderStatus,
    Withdrawal,
    WithdrawalStatus,
)
from .ledger import adjust_balance, to_money

logger = logging.getLogger(__name__)

PAYMENT_DETAIL_FIELDS = (
    "amount_local",
    "card_number",
    "iban",
    "tax_number",
    "cvu",
    "full_name",
    "note",
)


def _require_cabinets(from_cabinet: str, to_cabinet: str) -> None:
    if not from_cabinet or not to_cabinet:
        raise ValidationError("Se requieren el cabinet de origen y el de destino")
    if from_cabinet == to_cabinet:
        raise ValidationError("El cabinet de origen y el de destino deben ser distintos")


def _positive_money(value) -> Decimal:
    amount = to_money(value)
    if amount <= 0:
        raise ValidationError("El monto debe ser mayor que 0 (mínimo 0.01)")
    return amount


# =============================================================================
# ÓRDENES
# =============================================================================

async def create_order(
    db: AsyncSession,
    from_cabinet: str,
    to_cabinet: str,
    order_type: str,
    amount_usdt: Decimal,
    request_id: Optional[int] = None,
    **details,
) -> Order:
    """
    Crea una orden PENDING. Si viene de una solicitud, descuenta
    `amount_usdt` de su `remaining_amount` (sin piso: puede quedar negativo).
    """
    _require_cabinets(from_cabinet, to_cabinet)
    unknown = set(details) - set(PAYMENT_DETAIL_FIELDS)
    if unknown:
        raise ValidationError(f"Campos desconocidos: {', '.join(sorted(unknown))}")

    amount_usdt = _positive_money(amount_usdt)
    if details.get("amount_local") is not None:
        details["amount_local"] = to_money(details["amount_local"])

    async with db.begin():
        if request_id is not None:
            result = await db.execute(
                update(OrderRequest)
                .where(OrderRequest.id == request_id)
                .values(remaining_amount=OrderRequest.remaining_amount - amount_usdt)
            )
            if result.rowcount == 0:
                raise NotFoundError("Solicitud de orden", request_id)

        order = Order(
            request_id=request_id,
            from_cabinet=from_cabinet,
            to_cabinet=to_cabinet,
            type=order_type,
            amount_usdt=amount_usdt,
            status=OrderStatus.PENDING,
            **details,
        )
        db.add(order)
        await db.flush()

    logger.info(
        "[ORDER] Creada %s: %s -> %s por %s USDT (solicitud=%s)",
        order.id, from_cabinet, to_cabinet, amount_usdt, request_id,
    )
    return order


async def _locked_order(db: AsyncSession, order_id: int) -> Order:
    order = await db.get(Order, order_id, with_for_update=True, populate_existing=True)
    if order is None:
        raise NotFoundError("Orden", order_id)
    return order


async def settle_order(
    db: AsyncSession,
    order_id: int,
    receipts: Optional[Sequence[str]] = None,
) -> Order:
    """
    Marca la orden como pagada, guarda los comprobantes y aplica el ajuste
    de saldo (from_cabinet paga a to_cabinet). Solo una vez.
    """
    async with db.begin():
        order = await _locked_order(db, order_id)

        if order.status == OrderStatus.COMPLETED:
            raise AlreadySettledError("La orden ya está pagada", order_id=order_id)
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransitionError("La orden está cancelada", order_id=order_id)

        order.status = OrderStatus.COMPLETED
        order.receipts = list(receipts) if receipts is not None else None
        await adjust_balance(db, order.from_cabinet, order.to_cabinet, order.amount_usdt)

    logger.info("[ORDER] Pagada %s (%s USDT)", order.id, order.amount_usdt)
    return order


async def cancel_order(db: AsyncSession, order_id: int) -> Order:
    """
    Cancela una orden PENDING y devuelve su monto a la solicitud de origen.
    Una orden ya terminal no se puede cancelar (evita la doble devolución).
    """
    async with db.begin():
        order = await _locked_order(db, order_id)

        if order.status == OrderStatus.COMPLETED:
            raise AlreadySettledError("La orden ya está pagada", order_id=order_id)
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransitionError("La orden ya está cancelada", order_id=order_id)

        order.status = OrderStatus.CANCELLED

        if order.request_id is not None:
            result = await db.execute(
                update(OrderRequest)
                .where(OrderRequest.id == order.request_id)
                .values(remaining_amount=OrderRequest.remaining_amount + order.amount_usdt)
            )
            if result.rowcount == 0:
                logger.info(
                    "[ORDER] Solicitud %s ya no existe, nada que devolver",
                    order.request_id,
                )

    logger.info("[ORDER] Cancelada %s", order.id)
    return order


async def list_orders_for_cabinet(db: AsyncSession, cabinet: str) -> List[Order]:
    """Órdenes donde participa `cabinet`, sin las que ocultó, más recientes primero."""
    hidden = select(HiddenOrder.order_id).where(HiddenOrder.cabinet == cabinet)
    async with db.begin():
        result = await db.execute(
            select(Order)
            .where(
                or_(Order.from_cabinet == cabinet, Order.to_cabinet == cabinet),
                Order.id.not_in(hidden),
            )
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        return list(result.scalars().all())


# =============================================================================
# SOLICITUDES DE ÓRDENES
# =============================================================================

async def create_order_request(
    db: AsyncSession,
    from_cabinet: str,
    to_cabinet: str,
    amount: Decimal,
    request_type: str,
) -> OrderRequest:
    _require_cabinets(from_cabinet, to_cabinet)
    amount = _positive_money(amount)

    async with db.begin():
        order_request = OrderRequest(
            from_cabinet=from_cabinet,
            to_cabinet=to_cabinet,
            amount=amount,
            type=request_type,
            remaining_amount=amount,
        )
        db.add(order_request)
        await db.flush()

    logger.info(
        "[REQUEST] Creada %s: %s -> %s por %s",
        order_request.id, from_cabinet, to_cabinet, amount,
    )
    return order_request


async def cancel_order_request(db: AsyncSession, request_id: int) -> None:
    """Borra la solicitud. Las órdenes ya creadas conservan su request_id."""
    async with db.begin():
        order_request = await db.get(
            OrderRequest, request_id, with_for_update=True, populate_existing=True
        )
        if order_request is None:
            raise NotFoundError("Solicitud de orden", request_id)
        await db.delete(order_request)

    logger.info("[REQUEST] Eliminada %s", request_id)


async def list_active_order_requests(db: AsyncSession) -> List[OrderRequest]:
    async with db.begin():
        result = await db.execute(
            select(OrderRequest)
            .where(OrderRequest.remaining_amount > 0)
            .order_by(OrderRequest.created_at.desc(), OrderRequest.id.desc())
        )
        return list(result.scalars().all())


# =============================================================================
# RETIROS
# =============================================================================

async def create_withdrawal(
    db: AsyncSession,
    from_cabinet: str,
    to_cabinet: str,
    amount: Decimal,
    address: str,
) -> Withdrawal:
    """Registra un retiro PENDING. No se valida el saldo (puede ser <= 0)."""
    _require_cabinets(from_cabinet, to_cabinet)
    if not address or not address.strip():
        raise ValidationError("La dirección de retiro es obligatoria")
    amount = _positive_money(amount)

    async with db.begin():
        withdrawal = Withdrawal(
            from_cabinet=from_cabinet,
            to_cabinet=to_cabinet,
            amount=amount,
            address=address.strip(),
            status=WithdrawalStatus.PENDING,
        )
        db.add(withdrawal)
        await db.flush()

    logger.info(
        "[WITHDRAWAL] Creado %s: %s -> %s por %s",
        withdrawal.id, from_cabinet, to_cabinet, amount,
    )
    return withdrawal


async def confirm_withdrawal(
    db: AsyncSession,
    withdrawal_id: int,
    txid: Optional[str] = None,
) -> Withdrawal:
    """Confirma el retiro con su txid y aplica el ajuste de saldo una sola vez."""
    async with db.begin():
        withdrawal = await db.get(Withdrawal, withdrawal_id, with_for_update=True, populate_existing=True)
        if withdrawal is None:
            raise NotFoundError("Retiro", withdrawal_id)
        if withdrawal.status == WithdrawalStatus.COMPLETED:
            raise AlreadySettledError("El retiro ya está confirmado", withdrawal_id=withdrawal_id)

        withdrawal.status = WithdrawalStatus.COMPLETED
        withdrawal.txid = txid
        await adjust_balance(db, withdrawal.from_cabinet, withdrawal.to_cabinet, withdrawal.amount)

    logger.info("[WITHDRAWAL] Confirmado %s (txid=%s)", withdrawal.id, txid)
    return withdrawal


async def delete_withdrawal(db: AsyncSession, withdrawal_id: int) -> None:
    """
    Borra el retiro en cualquier estado. Borrar uno COMPLETED no revierte el
    ajuste de saldo ya aplicado.
    """
    async with db.begin():
        withdrawal = await db.get(Withdrawal, withdrawal_id, with_for_update=True, populate_existing=True)
        if withdrawal is None:
            raise NotFoundError("Retiro", withdrawal_id)
        if withdrawal.status == WithdrawalStatus.COMPLETED:
            logger.warning(
                "[WITHDRAWAL] Eliminando retiro confirmado %s; el saldo no se revierte",
                withdrawal_id,
            )
        await db.delete(withdrawal)

    logger.info("[WITHDRAWAL] Eliminado %s", withdrawal_id)


async def list_withdrawals_for_cabinet(db: AsyncSession, cabinet: str) -> List[Withdrawal]:
    hidden = select(HiddenWithdrawal.withdrawal_id).where(HiddenWithdrawal.cabinet == cabinet)
    async with db.begin():
        result = await db.execute(
            select(Withdrawal)
            .where(
                or_(Withdrawal.from_cabinet == cabinet, Withdrawal.to_cabinet == cabinet),
                Withdrawal.id.not_in(hidden),
            )
            .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
        )
        return list(result.scalars().all())


# =============================================================================
# OCULTAMIENTO LOCAL
# =============================================================================

async def _hide(
    db: AsyncSession,
    marker: Union[Type[HiddenOrder], Type[HiddenWithdrawal]],
    target: Union[Type[Order], Type[Withdrawal]],
    label: str,
    cabinet: str,
    entity_id: int,
) -> None:
    if not cabinet or not cabinet.strip():
        raise ValidationError("Se requiere el cabinet")

    id_column = marker.order_id if marker is HiddenOrder else marker.withdrawal_id
    try:
        async with db.begin():
            if await db.get(target, entity_id) is None:
                raise NotFoundError(label, entity_id)

            existing = await db.scalar(
                select(marker.id).where(marker.cabinet == cabinet, id_column == entity_id)
            )
            if existing is None:
                db.add(marker(cabinet=cabinet, **{id_column.key: entity_id}))
    except IntegrityError:
        # Otro request insertó la misma marca entre la lectura y el insert
        logger.info("[HIDE] %s %s ya estaba oculto para %s", label, entity_id, cabinet)


async def hide_order(db: AsyncSession, cabinet: str, order_id: int) -> None:
    """Oculta la orden solo para `cabinet`; no cambia su estado ni el saldo."""
    await _hide(db, HiddenOrder, Order, "Orden", cabinet, order_id)


async def hide_withdrawal(db: AsyncSession, cabinet: str, withdrawal_id: int) -> None:
    await _hide(db, HiddenWithdrawal, Withdrawal, "Retiro", cabinet, withdrawal_id)
