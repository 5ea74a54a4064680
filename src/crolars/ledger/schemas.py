"""Pydantic request/response models for the Crolars wallet endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class TransactionCreateRequest(BaseModel):
    amount: int = Field(..., gt=0)
    type: Literal["EARNED", "SPENT", "BONUS", "PENALTY"]
    description: str = Field(..., min_length=1, max_length=500)
    related_id: str | None = Field(None, max_length=100)
    related_type: str | None = Field(None, max_length=50)
    idempotency_key: str | None = Field(None, max_length=200)
    # Admins may credit/debit another user's wallet
    user_id: int | None = None


class TransactionResponse(BaseModel):
    id: int
    amount: int
    signed_amount: int
    type: str
    description: str
    related_id: str | None = None
    related_type: str | None = None
    created_at: datetime


class KindStats(BaseModel):
    total: int
    count: int


class WalletResponse(BaseModel):
    balance: int
    transactions: list[TransactionResponse]
    total: int
    page: int
    limit: int
    stats: dict[str, KindStats]


class TransactionCreatedResponse(BaseModel):
    transaction: TransactionResponse
    balance: int
