"""
=============================================================================
CABINEX - Historial de Operaciones
=============================================================================
Vista de solo lectura: órdenes, retiros y ajustes administrativos de saldo
consultados por separado (cada uno ya ordenado del más reciente al más
antiguo) y mezclados en una sola secuencia descendente por `created_at`.
=============================================================================
"""

import heapq
from operator import itemgetter
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import LedgerConfig
from ..models import (
    AdminAction,
    AdminLog,
    Order,
    OrderStatus,
    Withdrawal,
    WithdrawalStatus,
)

HistoryEntry = Dict[str, Any]


def _order_entry(order: Order) -> HistoryEntry:
    return {
        "operation_type": "order",
        "id": order.id,
        "from_cabinet": order.from_cabinet,
        "to_cabinet": order.to_cabinet,
        "amount": order.amount_usdt,
        "amount_local": order.amount_local,
        "card_number": order.card_number,
        "iban": order.iban,
        "tax_number": order.tax_number,
        "cvu": order.cvu,
        "fio": order.full_name,
        "created_at": order.created_at,
        "status": order.status.value,
        "order_type": order.type,
        "receipt_files": order.receipts,
        "comment": order.note,
    }


def _withdrawal_entry(withdrawal: Withdrawal) -> HistoryEntry:
    return {
        "operation_type": "withdrawal",
        "id": withdrawal.id,
        "from_cabinet": withdrawal.from_cabinet,
        "to_cabinet": withdrawal.to_cabinet,
        "amount": withdrawal.amount,
        "created_at": withdrawal.created_at,
        "status": withdrawal.status.value,
        "txid": withdrawal.txid,
    }


def _adjustment_entry(log: AdminLog) -> HistoryEntry:
    return {
        "operation_type": "balance_adjustment",
        "id": log.id,
        "admin_name": log.admin_name,
        "cabinet_from": log.cabinet_from,
        "cabinet_to": log.cabinet_to,
        "amount_old": log.amount_old,
        "amount_new": log.amount_new,
        "comment": log.comment,
        "created_at": log.created_at,
    }


def normalize_cabinet_filter(cabinet: Optional[str]) -> Optional[str]:
    """`None`, vacío o "all" significan sin filtro."""
    if not cabinet or cabinet == LedgerConfig.ALL_CABINETS_FILTER:
        return None
    return cabinet


async def collect_history(
    db: AsyncSession,
    cabinet: Optional[str] = None,
    completed_only: bool = True,
) -> List[HistoryEntry]:
    """
    Historial combinado, del más reciente al más antiguo.

    Args:
        cabinet: limita a operaciones donde participa ese cabinet
        completed_only: solo órdenes pagadas y retiros confirmados
                        (vista del cabinet); el admin ve todos los estados

    Con timestamps iguales se conserva el orden de las fuentes:
    órdenes, luego retiros, luego ajustes.
    """
    orders_query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
    withdrawals_query = select(Withdrawal).order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
    adjustments_query = (
        select(AdminLog)
        .where(AdminLog.action_type == AdminAction.BALANCE_UPDATE.value)
        .order_by(AdminLog.created_at.desc(), AdminLog.id.desc())
    )

    if completed_only:
        orders_query = orders_query.where(Order.status == OrderStatus.COMPLETED)
        withdrawals_query = withdrawals_query.where(Withdrawal.status == WithdrawalStatus.COMPLETED)

    if cabinet is not None:
        orders_query = orders_query.where(
            or_(Order.from_cabinet == cabinet, Order.to_cabinet == cabinet)
        )
        withdrawals_query = withdrawals_query.where(
            or_(Withdrawal.from_cabinet == cabinet, Withdrawal.to_cabinet == cabinet)
        )
        adjustments_query = adjustments_query.where(
            or_(AdminLog.cabinet_from == cabinet, AdminLog.cabinet_to == cabinet)
        )

    async with db.begin():
        orders = [_order_entry(o) for o in (await db.execute(orders_query)).scalars()]
        withdrawals = [_withdrawal_entry(w) for w in (await db.execute(withdrawals_query)).scalars()]
        adjustments = [_adjustment_entry(a) for a in (await db.execute(adjustments_query)).scalars()]

    return list(heapq.merge(
        orders, withdrawals, adjustments,
        key=itemgetter("created_at"),
        reverse=True,
    ))
