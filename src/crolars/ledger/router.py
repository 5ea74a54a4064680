"""Crolars wallet endpoints: balance, history and transactions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.auth.dependencies import get_current_user
from crolars.config import get_settings
from crolars.database import get_session
from crolars.db.models import CrolarTransaction, User
from crolars.ledger.schemas import (
    KindStats,
    TransactionCreatedResponse,
    TransactionCreateRequest,
    TransactionResponse,
    WalletResponse,
)
from crolars.ledger.service import (
    TransactionKind,
    create_transaction,
    get_balance,
    history,
    run_with_timeout,
    signed_amount,
    stats_by_kind,
)
from crolars.ratelimit import rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/gamification", tags=["Crolars"])


def transaction_response(tx: CrolarTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=tx.id,
        amount=tx.amount,
        signed_amount=signed_amount(tx.kind, tx.amount),
        type=tx.kind,
        description=tx.description,
        related_id=tx.related_id,
        related_type=tx.related_type,
        created_at=tx.created_at,
    )


@router.get("/crolars", response_model=WalletResponse)
async def get_wallet(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: TransactionKind | None = Query(None),  # noqa: A002
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Balance, paginated history and per-kind totals for the caller."""
    transactions, total = await history(db, user.id, page, limit, type.value if type else None)
    stats = await stats_by_kind(db, user.id)
    return WalletResponse(
        balance=await get_balance(db, user.id),
        transactions=[transaction_response(tx) for tx in transactions],
        total=total,
        page=page,
        limit=limit,
        stats={kind: KindStats(**values) for kind, values in stats.items()},
    )


@router.post(
    "/crolars",
    response_model=TransactionCreatedResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("crolars_spend"))],
)
async def post_transaction(
    body: TransactionCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Create a transaction. Regular users may only spend from their own wallet."""
    if not user.is_admin and body.type != TransactionKind.SPENT.value:
        raise HTTPException(status_code=403, detail="Only SPENT transactions are allowed")
    if body.user_id is not None and body.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Cannot modify another user's wallet")
    target_id = body.user_id or user.id
    if target_id != user.id and await db.get(User, target_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    settings = get_settings()
    tx = await run_with_timeout(
        create_transaction(
            db,
            target_id,
            body.amount,
            body.type,
            body.description,
            related_id=body.related_id,
            related_type=body.related_type,
            idempotency_key=body.idempotency_key,
        ),
        settings.ledger_timeout_seconds,
    )
    await db.commit()

    balance = await get_balance(db, target_id)
    logger.info("Crolars %s of %d for user %s (balance %d)", tx.kind, tx.amount, target_id, balance)
    return TransactionCreatedResponse(transaction=transaction_response(tx), balance=balance)
