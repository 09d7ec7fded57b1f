"""Libro de saldos: ajuste por liquidación, ajuste manual y vista por cabinet."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from cabinex.app import ledger
from cabinex.exceptions import InvariantViolationError, NotFoundError, ValidationError
from cabinex.models import AdminLog, Balance

from conftest import CABINET_X, CABINET_Y, CABINET_Z, CABINETS, reload


class TestToMoney:

    def test_rounds_half_up_to_cents(self):
        assert ledger.to_money("10.005") == Decimal("10.01")
        assert ledger.to_money(3) == Decimal("3.00")
        assert ledger.to_money(0.1) == Decimal("0.10")


class TestAdjustBalance:

    @pytest.mark.asyncio
    async def test_payer_on_from_side_subtracts(self, db, session_factory, balance_xy):
        async with db.begin():
            await ledger.adjust_balance(db, CABINET_X, CABINET_Y, Decimal("30.00"))

        assert (await reload(session_factory, Balance, balance_xy.id)).amount == Decimal("70.00")

    @pytest.mark.asyncio
    async def test_payer_on_to_side_adds(self, db, session_factory, balance_xy):
        async with db.begin():
            await ledger.adjust_balance(db, CABINET_Y, CABINET_X, Decimal("10.00"))

        assert (await reload(session_factory, Balance, balance_xy.id)).amount == Decimal("110.00")

    @pytest.mark.asyncio
    async def test_missing_pair_is_skipped(self, db, session_factory):
        async with db.begin():
            result = await ledger.adjust_balance(db, CABINET_X, CABINET_Z, Decimal("5.00"))

        assert result is None
        async with session_factory() as session:
            assert (await session.execute(select(Balance))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_both_orderings_is_invariant_violation(self, db, session_factory):
        async with session_factory() as session:
            async with session.begin():
                session.add(Balance(cabinet_from=CABINET_X, cabinet_to=CABINET_Y, amount=Decimal("1")))
                session.add(Balance(cabinet_from=CABINET_Y, cabinet_to=CABINET_X, amount=Decimal("2")))

        with pytest.raises(InvariantViolationError):
            async with db.begin():
                await ledger.adjust_balance(db, CABINET_X, CABINET_Y, Decimal("1.00"))


class TestSetBalance:

    @pytest.mark.asyncio
    async def test_overwrites_and_logs_old_and_new(self, db, session_factory, balance_xy):
        updated = await ledger.set_balance(db, balance_xy.id, Decimal("250.5"), "root", "  corrección  ")

        assert updated.amount == Decimal("250.50")
        assert (await reload(session_factory, Balance, balance_xy.id)).amount == Decimal("250.50")

        async with session_factory() as session:
            logs = (await session.execute(select(AdminLog))).scalars().all()
        assert len(logs) == 1
        log = logs[0]
        assert log.admin_name == "root"
        assert log.action_type == "balance_update"
        assert (log.cabinet_from, log.cabinet_to) == (CABINET_X, CABINET_Y)
        assert log.amount_old == Decimal("100.00")
        assert log.amount_new == Decimal("250.50")
        assert log.comment == "corrección"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("admin_name,comment", [
        ("root", ""),
        ("root", "   "),
        ("root", None),
        ("", "motivo"),
        (None, "motivo"),
    ])
    async def test_requires_admin_and_comment(self, db, session_factory, balance_xy, admin_name, comment):
        with pytest.raises(ValidationError):
            await ledger.set_balance(db, balance_xy.id, Decimal("1"), admin_name, comment)

        assert (await reload(session_factory, Balance, balance_xy.id)).amount == Decimal("100.00")
        async with session_factory() as session:
            assert (await session.execute(select(AdminLog))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_unknown_balance(self, db):
        with pytest.raises(NotFoundError):
            await ledger.set_balance(db, 999, Decimal("1"), "root", "motivo")


class TestCabinetView:

    @pytest.mark.asyncio
    async def test_signed_from_each_side_and_zero_filled(self, db, balance_xy):
        view_x = await ledger.balances_for_cabinet(db, CABINET_X, CABINETS)
        view_y = await ledger.balances_for_cabinet(db, CABINET_Y, CABINETS)

        assert view_x == {CABINET_Y: Decimal("100.00"), CABINET_Z: Decimal("0.00")}
        assert view_y == {CABINET_X: Decimal("-100.00"), CABINET_Z: Decimal("0.00")}

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, db, session_factory, balance_xy):
        # X-Y ya existe: solo faltan X-Z e Y-Z
        assert await ledger.initialize_balances(db, CABINETS) == 2
        assert await ledger.initialize_balances(db, CABINETS) == 0

        rows = await ledger.list_balances(db)
        pairs = [frozenset((b.cabinet_from, b.cabinet_to)) for b in rows]
        assert len(pairs) == len(set(pairs)) == 3
