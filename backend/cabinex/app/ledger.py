"""
=============================================================================
CABINEX - Libro de Saldos entre Cabinetes
=============================================================================
Único punto que modifica la tabla `balances`:

- adjust_balance: ajuste por liquidación (pago de orden / confirmación de
  retiro), siempre dentro de la transacción del llamador y con la fila
  bloqueada (SELECT ... FOR UPDATE).
- set_balance: sobrescritura administrativa con registro en admin_logs.
=============================================================================
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from itertools import combinations
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import LedgerConfig
from ..exceptions import InvariantViolationError, NotFoundError, ValidationError
from ..models import AdminAction, AdminLog, Balance

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Normaliza un monto a 2 decimales (precisión de las columnas)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _pair_clause(cabinet_a: str, cabinet_b: str):
    return or_(
        and_(Balance.cabinet_from == cabinet_a, Balance.cabinet_to == cabinet_b),
        and_(Balance.cabinet_from == cabinet_b, Balance.cabinet_to == cabinet_a),
    )


async def find_pair_balance(
    db: AsyncSession,
    cabinet_a: str,
    cabinet_b: str,
    for_update: bool = False,
) -> Optional[Balance]:
    """
    Busca la fila del par no ordenado {cabinet_a, cabinet_b} probando ambos
    órdenes. Si existen las dos filas el libro está corrupto.
    """
    query = select(Balance).where(_pair_clause(cabinet_a, cabinet_b)).order_by(Balance.id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    rows = (await db.execute(query)).scalars().all()

    if len(rows) > 1:
        logger.error(
            "[LEDGER] Saldo duplicado para el par %s / %s: ids=%s",
            cabinet_a, cabinet_b, [row.id for row in rows],
        )
        raise InvariantViolationError(
            f"Existen dos saldos para el par {cabinet_a} / {cabinet_b}",
            balance_ids=[row.id for row in rows],
        )
    return rows[0] if rows else None


async def adjust_balance(
    db: AsyncSession,
    payer: str,
    payee: str,
    delta: Decimal,
) -> Optional[Balance]:
    """
    Aplica una liquidación de `payer` hacia `payee` por `delta`.

    Si la fila almacenada es (payer -> payee) quien envía reduce lo que se le
    debe: amount -= delta. Si es (payee -> payer) quien recibe aumenta su
    crédito: amount += delta.

    Debe llamarse dentro de una transacción abierta. Si el par no tiene fila
    no se crea ninguna y el ajuste se omite.
    """
    balance = await find_pair_balance(db, payer, payee, for_update=True)
    if balance is None:
        logger.warning(
            "[LEDGER] Sin saldo para el par %s / %s, ajuste de %s omitido",
            payer, payee, delta,
        )
        return None

    amount_before = balance.amount
    if balance.cabinet_from == payer:
        balance.amount = amount_before - delta
    else:
        balance.amount = amount_before + delta
    await db.flush()

    logger.info(
        "[LEDGER] Saldo %s (%s -> %s): %s -> %s",
        balance.id, balance.cabinet_from, balance.cabinet_to, amount_before, balance.amount,
    )
    return balance


async def set_balance(
    db: AsyncSession,
    balance_id: int,
    new_amount: Decimal,
    admin_name: Optional[str],
    comment: Optional[str],
) -> Balance:
    """
    Sobrescribe un saldo (ajuste administrativo) y registra el cambio.
    El ajuste es autoritativo: no se recalcula nada a partir del historial.
    """
    if not admin_name or not admin_name.strip():
        raise ValidationError("No se indicó el administrador")
    if not comment or not comment.strip():
        raise ValidationError("El comentario es obligatorio")

    async with db.begin():
        balance = await db.get(Balance, balance_id, with_for_update=True, populate_existing=True)
        if balance is None:
            raise NotFoundError("Saldo", balance_id)

        new_amount = to_money(new_amount)
        amount_old = balance.amount
        balance.amount = new_amount
        db.add(AdminLog(
            admin_name=admin_name.strip(),
            action_type=AdminAction.BALANCE_UPDATE.value,
            cabinet_from=balance.cabinet_from,
            cabinet_to=balance.cabinet_to,
            amount_old=amount_old,
            amount_new=new_amount,
            comment=comment.strip(),
        ))

    logger.info(
        "[LEDGER] Ajuste admin por %s en saldo %s: %s -> %s",
        admin_name, balance_id, amount_old, new_amount,
    )
    return balance


async def balances_for_cabinet(
    db: AsyncSession,
    cabinet: str,
    known_cabinets: Iterable[str],
) -> Dict[str, Decimal]:
    """
    Saldos de `cabinet` frente a cada contraparte, con signo desde su punto
    de vista. Los cabinetes conocidos sin fila aparecen con 0.
    """
    balances: Dict[str, Decimal] = {
        other: LedgerConfig.ZERO for other in known_cabinets if other != cabinet
    }
    async with db.begin():
        rows = (await db.execute(
            select(Balance).where(
                or_(Balance.cabinet_from == cabinet, Balance.cabinet_to == cabinet)
            )
        )).scalars().all()

    for row in rows:
        balances[row.counterparty(cabinet)] = row.amount_for(cabinet)
    return balances


async def list_balances(db: AsyncSession) -> List[Balance]:
    async with db.begin():
        result = await db.execute(
            select(Balance).order_by(Balance.cabinet_from, Balance.cabinet_to)
        )
        return list(result.scalars().all())


async def initialize_balances(db: AsyncSession, cabinets: Iterable[str]) -> int:
    """
    Crea una fila en cero por cada par no ordenado que aún no tenga saldo
    (en ninguno de los dos órdenes). Devuelve cuántas filas se crearon.
    """
    created = 0
    async with db.begin():
        existing = (await db.execute(
            select(Balance.cabinet_from, Balance.cabinet_to)
        )).all()
        seen = {frozenset(pair) for pair in existing}

        for cabinet_a, cabinet_b in combinations(list(cabinets), 2):
            if frozenset((cabinet_a, cabinet_b)) in seen:
                continue
            db.add(Balance(cabinet_from=cabinet_a, cabinet_to=cabinet_b, amount=LedgerConfig.ZERO))
            seen.add(frozenset((cabinet_a, cabinet_b)))
            created += 1

    if created:
        logger.info("[LEDGER] %s saldos inicializados en cero", created)
    return created
