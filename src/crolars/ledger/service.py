"""Crolars currency ledger: append-only transactions plus an atomically maintained balance.

Every mutation happens inside the caller's transaction:

1. ensure the wallet row exists (INSERT ... ON CONFLICT DO NOTHING)
2. move the balance with a single UPDATE ... RETURNING; debits carry
   ``WHERE balance >= :amount`` so the check and the decrement are one statement
3. append the ledger row (2 and 3 share a savepoint, so a duplicate idempotency
   key raised by a concurrent retry undoes the balance move)
4. stage a ``CurrencyChanged`` event (emitted after commit)

The caller commits. If it rolls back, neither the balance nor the ledger row persists.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from datetime import datetime, timezone
from enum import Enum
from typing import TypeVar

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.db.dialect import insert_ignore
from crolars.db.models import CrolarTransaction, Wallet
from crolars.errors import InsufficientFunds, InvalidAmount, LedgerOutcomeUnknown
from crolars.events import CurrencyChanged, stage_event

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionKind(str, Enum):
    EARNED = "EARNED"
    SPENT = "SPENT"
    BONUS = "BONUS"
    PENALTY = "PENALTY"


class RelatedType(str, Enum):
    POST = "POST"
    NOTE = "NOTE"
    QUESTION = "QUESTION"
    ANSWER = "ANSWER"
    PURCHASE = "PURCHASE"
    REWARD = "REWARD"
    LEVEL = "LEVEL"
    ACHIEVEMENT = "ACHIEVEMENT"
    STREAK = "STREAK"
    EVENT = "EVENT"


CREDIT_KINDS = frozenset({TransactionKind.EARNED, TransactionKind.BONUS})
DEBIT_KINDS = frozenset({TransactionKind.SPENT, TransactionKind.PENALTY})


def _validate_amount(amount: object) -> int:
    # bool is an int subclass; True is not a valid amount
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        msg = f"Amount must be a positive integer, got {amount!r}"
        raise InvalidAmount(msg)
    return amount


def _coerce_kind(kind: str | TransactionKind, allowed: frozenset[TransactionKind]) -> TransactionKind:
    try:
        value = TransactionKind(kind)
    except ValueError:
        msg = f"Unknown transaction kind: {kind!r}"
        raise InvalidAmount(msg) from None
    if value not in allowed:
        msg = f"Kind {value.value} not allowed here; expected one of {sorted(k.value for k in allowed)}"
        raise InvalidAmount(msg)
    return value


def signed_amount(kind: str, amount: int) -> int:
    return amount if TransactionKind(kind) in CREDIT_KINDS else -amount


def derive_idempotency_key(
    user_id: int,
    kind: TransactionKind,
    related_type: str | None,
    related_id: str | None,
) -> str | None:
    """Credits tied to a related object are unique per (user, kind, related)."""
    if related_type and related_id:
        return f"{user_id}:{kind.value}:{related_type}:{related_id}"
    return None


async def _ensure_wallet(db: AsyncSession, user_id: int) -> None:
    await insert_ignore(
        db, Wallet, ["user_id"],
        user_id=user_id, balance=0, updated_at=datetime.now(timezone.utc),
    )


async def _find_by_key(db: AsyncSession, key: str) -> CrolarTransaction | None:
    result = await db.execute(
        select(CrolarTransaction).where(CrolarTransaction.idempotency_key == key)
    )
    return result.scalar_one_or_none()


def _append(
    db: AsyncSession,
    user_id: int,
    kind: TransactionKind,
    amount: int,
    description: str,
    related_id: str | None,
    related_type: str | None,
    idempotency_key: str | None,
) -> CrolarTransaction:
    tx = CrolarTransaction(
        user_id=user_id,
        amount=amount,
        kind=kind.value,
        description=description,
        related_id=related_id,
        related_type=related_type,
        idempotency_key=idempotency_key,
        created_at=datetime.now(timezone.utc),
    )
    db.add(tx)
    return tx


async def _resolve_duplicate(db: AsyncSession, key: str | None, exc: IntegrityError) -> CrolarTransaction:
    """A concurrent retry inserted ``key`` first; return its transaction."""
    existing = await _find_by_key(db, key) if key is not None else None
    if existing is None:
        raise exc
    logger.info("Concurrent duplicate transaction resolved: key=%s", key)
    return existing


async def credit(
    db: AsyncSession,
    user_id: int,
    amount: int,
    kind: str | TransactionKind,
    description: str,
    related_id: str | None = None,
    related_type: str | None = None,
    idempotency_key: str | None = None,
) -> CrolarTransaction:
    """Append an EARNED/BONUS transaction and increment the balance.

    Retrying a credit with the same idempotency key (explicit, or derived from
    the related object) returns the original transaction without moving the balance.
    """
    amount = _validate_amount(amount)
    kind = _coerce_kind(kind, CREDIT_KINDS)
    key = idempotency_key or derive_idempotency_key(user_id, kind, related_type, related_id)

    if key is not None:
        existing = await _find_by_key(db, key)
        if existing is not None:
            logger.info("Duplicate credit ignored: user=%s key=%s", user_id, key)
            return existing

    await _ensure_wallet(db, user_id)
    now = datetime.now(timezone.utc)
    # Savepoint: losing a race on the idempotency key undoes the increment
    try:
        async with db.begin_nested():
            result = await db.execute(
                update(Wallet)
                .where(Wallet.user_id == user_id)
                .values(balance=Wallet.balance + amount, updated_at=now)
                .returning(Wallet.balance)
            )
            balance = result.scalar_one()
            tx = _append(db, user_id, kind, amount, description, related_id, related_type, key)
            await db.flush()
    except IntegrityError as exc:
        return await _resolve_duplicate(db, key, exc)

    stage_event(db, CurrencyChanged(
        user_id=user_id,
        transaction_id=tx.id,
        kind=kind.value,
        amount=amount,
        signed_amount=amount,
        balance=balance,
        description=description,
    ))
    return tx


async def debit(
    db: AsyncSession,
    user_id: int,
    amount: int,
    kind: str | TransactionKind,
    description: str,
    related_id: str | None = None,
    related_type: str | None = None,
    idempotency_key: str | None = None,
) -> CrolarTransaction:
    """Append a SPENT/PENALTY transaction if the balance covers it.

    Raises InsufficientFunds (and records nothing) when it does not.
    """
    amount = _validate_amount(amount)
    kind = _coerce_kind(kind, DEBIT_KINDS)

    if idempotency_key is not None:
        existing = await _find_by_key(db, idempotency_key)
        if existing is not None:
            logger.info("Duplicate debit ignored: user=%s key=%s", user_id, idempotency_key)
            return existing

    await _ensure_wallet(db, user_id)
    now = datetime.now(timezone.utc)
    try:
        async with db.begin_nested():
            result = await db.execute(
                update(Wallet)
                .where(Wallet.user_id == user_id, Wallet.balance >= amount)
                .values(balance=Wallet.balance - amount, updated_at=now)
                .returning(Wallet.balance)
            )
            balance = result.scalar_one_or_none()
            if balance is not None:
                tx = _append(db, user_id, kind, amount, description, related_id, related_type, idempotency_key)
                await db.flush()
    except IntegrityError as exc:
        return await _resolve_duplicate(db, idempotency_key, exc)
    if balance is None:
        raise InsufficientFunds(required=amount, available=await get_balance(db, user_id))

    stage_event(db, CurrencyChanged(
        user_id=user_id,
        transaction_id=tx.id,
        kind=kind.value,
        amount=amount,
        signed_amount=-amount,
        balance=balance,
        description=description,
    ))
    return tx


async def create_transaction(
    db: AsyncSession,
    user_id: int,
    amount: int,
    kind: str | TransactionKind,
    description: str,
    related_id: str | None = None,
    related_type: str | None = None,
    idempotency_key: str | None = None,
) -> CrolarTransaction:
    """Route to credit or debit by kind."""
    try:
        value = TransactionKind(kind)
    except ValueError:
        msg = f"Unknown transaction kind: {kind!r}"
        raise InvalidAmount(msg) from None
    op = credit if value in CREDIT_KINDS else debit
    return await op(db, user_id, amount, value, description, related_id, related_type, idempotency_key)


async def get_balance(db: AsyncSession, user_id: int) -> int:
    """Current balance from the running total. Users without a wallet have 0."""
    result = await db.execute(select(Wallet.balance).where(Wallet.user_id == user_id))
    balance = result.scalar_one_or_none()
    return int(balance) if balance is not None else 0


async def reconcile_balance(db: AsyncSession, user_id: int) -> int:
    """Signed sum over the full ledger; must equal ``get_balance``."""
    signed = case(
        (CrolarTransaction.kind.in_([k.value for k in CREDIT_KINDS]), CrolarTransaction.amount),
        else_=-CrolarTransaction.amount,
    )
    result = await db.execute(
        select(func.coalesce(func.sum(signed), 0)).where(CrolarTransaction.user_id == user_id)
    )
    return int(result.scalar_one())


async def history(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    page_size: int = 20,
    kind: str | None = None,
) -> tuple[list[CrolarTransaction], int]:
    """Transactions newest first, with the total count for the same filter."""
    filters = [CrolarTransaction.user_id == user_id]
    if kind is not None:
        filters.append(CrolarTransaction.kind == TransactionKind(kind).value)

    total_result = await db.execute(
        select(func.count()).select_from(CrolarTransaction).where(*filters)
    )
    total = total_result.scalar_one()

    result = await db.execute(
        select(CrolarTransaction)
        .where(*filters)
        .order_by(CrolarTransaction.created_at.desc(), CrolarTransaction.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


async def stats_by_kind(db: AsyncSession, user_id: int) -> dict[str, dict[str, int]]:
    """Aggregate ``{kind: {total, count}}`` over the user's ledger."""
    result = await db.execute(
        select(
            CrolarTransaction.kind,
            func.sum(CrolarTransaction.amount),
            func.count(CrolarTransaction.id),
        )
        .where(CrolarTransaction.user_id == user_id)
        .group_by(CrolarTransaction.kind)
    )
    return {kind: {"total": int(total or 0), "count": int(count)} for kind, total, count in result}


async def run_with_timeout(op: Awaitable[T], seconds: float) -> T:
    """Bound a ledger call. On timeout the outcome is unknown: re-query before retrying."""
    try:
        return await asyncio.wait_for(op, timeout=seconds)
    except asyncio.TimeoutError:
        logger.error("Ledger operation timed out after %.1fs; outcome unknown", seconds)
        raise LedgerOutcomeUnknown(
            "Ledger operation timed out; re-query the balance before retrying"
        ) from None
