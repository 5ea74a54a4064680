"""Integration tests for the Crolars ledger against a real database."""

import asyncio

import pytest
from sqlalchemy import func, select

from crolars.database import get_session_factory
from crolars.db.models import CrolarTransaction
from crolars.errors import InsufficientFunds, InvalidAmount, LedgerOutcomeUnknown
from crolars.events import pending_events
from crolars.ledger import service as ledger_service
from crolars.ledger.service import (
    create_transaction,
    credit,
    debit,
    get_balance,
    history,
    reconcile_balance,
    run_with_timeout,
    signed_amount,
    stats_by_kind,
)


async def _tx_count(db, user_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(CrolarTransaction).where(CrolarTransaction.user_id == user_id)
    )
    return result.scalar_one()


class TestCreditDebit:
    @pytest.mark.asyncio
    async def test_spend_down_to_zero(self, db_session, make_user) -> None:
        user = await make_user()
        await credit(db_session, user.id, 40, "EARNED", "Answer accepted")
        await debit(db_session, user.id, 40, "SPENT", "Shop purchase")
        await db_session.commit()
        assert await get_balance(db_session, user.id) == 0

        with pytest.raises(InsufficientFunds) as exc_info:
            await debit(db_session, user.id, 1, "SPENT", "One more")
        assert exc_info.value.required == 1
        assert exc_info.value.available == 0
        await db_session.rollback()

        assert await get_balance(db_session, user.id) == 0
        assert await _tx_count(db_session, user.id) == 2

    @pytest.mark.asyncio
    async def test_balance_matches_ledger(self, db_session, make_user) -> None:
        user = await make_user()
        await credit(db_session, user.id, 100, "EARNED", "a")
        await credit(db_session, user.id, 50, "BONUS", "b")
        await debit(db_session, user.id, 30, "SPENT", "c")
        await debit(db_session, user.id, 20, "PENALTY", "d")
        await db_session.commit()
        assert await get_balance(db_session, user.id) == 100
        assert await reconcile_balance(db_session, user.id) == 100

    @pytest.mark.asyncio
    async def test_unknown_wallet_is_zero(self, db_session, make_user) -> None:
        user = await make_user()
        assert await get_balance(db_session, user.id) == 0
        assert await reconcile_balance(db_session, user.id) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 2.5, True])
    async def test_rejects_bad_amounts(self, db_session, make_user, amount) -> None:
        user = await make_user()
        with pytest.raises(InvalidAmount):
            await credit(db_session, user.id, amount, "EARNED", "bad")

    @pytest.mark.asyncio
    async def test_kind_must_match_direction(self, db_session, make_user) -> None:
        user = await make_user()
        with pytest.raises(InvalidAmount):
            await credit(db_session, user.id, 10, "SPENT", "wrong way")
        with pytest.raises(InvalidAmount):
            await create_transaction(db_session, user.id, 10, "REFUND", "unknown kind")

    @pytest.mark.asyncio
    async def test_create_transaction_routes_by_kind(self, db_session, make_user) -> None:
        user = await make_user()
        await create_transaction(db_session, user.id, 70, "BONUS", "gift")
        tx = await create_transaction(db_session, user.id, 20, "PENALTY", "spam")
        await db_session.commit()
        assert tx.kind == "PENALTY"
        assert signed_amount(tx.kind, tx.amount) == -20
        assert await get_balance(db_session, user.id) == 50


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_explicit_key(self, db_session, make_user) -> None:
        user = await make_user()
        first = await credit(db_session, user.id, 25, "EARNED", "reward", idempotency_key="reward-1")
        second = await credit(db_session, user.id, 25, "EARNED", "reward", idempotency_key="reward-1")
        await db_session.commit()
        assert first.id == second.id
        assert await get_balance(db_session, user.id) == 25
        assert await _tx_count(db_session, user.id) == 1

    @pytest.mark.asyncio
    async def test_derived_from_related_object(self, db_session, make_user) -> None:
        user = await make_user()
        await credit(db_session, user.id, 10, "EARNED", "answer", related_id="99", related_type="ANSWER")
        await credit(db_session, user.id, 10, "EARNED", "answer", related_id="99", related_type="ANSWER")
        await credit(db_session, user.id, 10, "EARNED", "answer", related_id="100", related_type="ANSWER")
        await db_session.commit()
        assert await get_balance(db_session, user.id) == 20

    @pytest.mark.asyncio
    async def test_debit_key(self, db_session, make_user) -> None:
        user = await make_user()
        await credit(db_session, user.id, 100, "EARNED", "seed")
        await debit(db_session, user.id, 30, "SPENT", "order", idempotency_key="order-7")
        await debit(db_session, user.id, 30, "SPENT", "order", idempotency_key="order-7")
        await db_session.commit()
        assert await get_balance(db_session, user.id) == 70

    @staticmethod
    def _stale_first_lookup(monkeypatch) -> None:
        """The first key lookup misses, as if a concurrent retry had not committed yet."""
        real_find = ledger_service._find_by_key
        calls: list[str] = []

        async def lookup(db, key):
            calls.append(key)
            if len(calls) == 1:
                return None
            return await real_find(db, key)

        monkeypatch.setattr(ledger_service, "_find_by_key", lookup)

    @pytest.mark.asyncio
    async def test_credit_losing_key_race_returns_original(self, db_session, make_user, monkeypatch) -> None:
        user = await make_user()
        async with get_session_factory()() as other:
            original = await credit(other, user.id, 50, "EARNED", "quest", idempotency_key="quest-3")
            await other.commit()

        self._stale_first_lookup(monkeypatch)
        retried = await credit(db_session, user.id, 50, "EARNED", "quest", idempotency_key="quest-3")
        await db_session.commit()

        assert retried.id == original.id
        assert await get_balance(db_session, user.id) == 50
        assert await _tx_count(db_session, user.id) == 1

    @pytest.mark.asyncio
    async def test_debit_losing_key_race_returns_original(self, db_session, make_user, monkeypatch) -> None:
        user = await make_user()
        async with get_session_factory()() as other:
            await credit(other, user.id, 100, "EARNED", "seed")
            original = await debit(other, user.id, 30, "SPENT", "order", idempotency_key="order-9")
            await other.commit()

        self._stale_first_lookup(monkeypatch)
        retried = await debit(db_session, user.id, 30, "SPENT", "order", idempotency_key="order-9")
        await db_session.commit()

        assert retried.id == original.id
        assert await get_balance(db_session, user.id) == 70
        assert await _tx_count(db_session, user.id) == 2

    @pytest.mark.asyncio
    async def test_race_keeps_earlier_work_in_transaction(self, db_session, make_user, monkeypatch) -> None:
        user = await make_user()
        async with get_session_factory()() as other:
            await credit(other, user.id, 5, "EARNED", "first", idempotency_key="dup-1")
            await other.commit()

        await credit(db_session, user.id, 20, "BONUS", "streak bonus")
        self._stale_first_lookup(monkeypatch)
        await credit(db_session, user.id, 5, "EARNED", "first", idempotency_key="dup-1")
        staged = pending_events(db_session)
        assert [e.amount for e in staged] == [20]
        await db_session.commit()

        assert await get_balance(db_session, user.id) == 25
        assert await _tx_count(db_session, user.id) == 2


class TestAtomicity:
    @pytest.mark.asyncio
    async def test_rollback_discards_balance_and_row(self, db_session, make_user) -> None:
        user = await make_user()
        await credit(db_session, user.id, 500, "BONUS", "never committed")
        assert len(pending_events(db_session)) == 1
        await db_session.rollback()
        assert pending_events(db_session) == []
        assert await get_balance(db_session, user.id) == 0
        assert await _tx_count(db_session, user.id) == 0

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, make_user) -> None:
        user = await make_user()
        factory = get_session_factory()
        async with factory() as db:
            await credit(db, user.id, 100, "EARNED", "starting balance")
            await db.commit()

        async def spend() -> bool:
            async with factory() as db:
                try:
                    await debit(db, user.id, 30, "SPENT", "race")
                except InsufficientFunds:
                    await db.rollback()
                    return False
                await db.commit()
                return True

        results = await asyncio.gather(*(spend() for _ in range(6)))
        assert sum(results) == 3

        async with factory() as db:
            assert await get_balance(db, user.id) == 10
            assert await reconcile_balance(db, user.id) == 10

    @pytest.mark.asyncio
    async def test_timeout_reports_unknown_outcome(self) -> None:
        with pytest.raises(LedgerOutcomeUnknown):
            await run_with_timeout(asyncio.sleep(1), 0.01)


class TestHistory:
    @pytest.mark.asyncio
    async def test_newest_first_with_filter_and_stats(self, db_session, make_user) -> None:
        user = await make_user()
        for i in range(5):
            await credit(db_session, user.id, 10 + i, "EARNED", f"earn {i}")
        await debit(db_session, user.id, 7, "SPENT", "spend")
        await db_session.commit()

        items, total = await history(db_session, user.id, page=1, page_size=4)
        assert total == 6
        assert len(items) == 4
        assert items[0].kind == "SPENT"

        earned, earned_total = await history(db_session, user.id, kind="EARNED")
        assert earned_total == 5
        assert all(t.kind == "EARNED" for t in earned)

        stats = await stats_by_kind(db_session, user.id)
        assert stats["EARNED"] == {"total": 60, "count": 5}
        assert stats["SPENT"] == {"total": 7, "count": 1}
