"""Typed gamification events and the after-commit event bus.

Services stage events on the session they mutate with :func:`stage_event`.
When that session commits, the staged events are handed to the process-wide
:class:`EventBus`; a rollback discards them. Consumers (notification fan-out)
therefore never observe a change that did not persist.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Any, Union

import structlog
from sqlalchemy import event as sa_event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

logger = structlog.get_logger()

_PENDING_KEY = "crolars.pending_events"


@dataclass(frozen=True, slots=True)
class XPAwarded:
    user_id: int
    amount: int
    source: str
    total_xp: int


@dataclass(frozen=True, slots=True)
class LevelUp:
    user_id: int
    old_level: int
    new_level: int
    total_xp: int
    level_name: str
    reward_crolars: int


@dataclass(frozen=True, slots=True)
class AchievementUnlocked:
    user_id: int
    slug: str
    name: str
    rarity: str
    xp_reward: int
    crolars_reward: int
    requires_claim: bool


@dataclass(frozen=True, slots=True)
class BadgeGranted:
    user_id: int
    slug: str
    name: str
    rarity: str


@dataclass(frozen=True, slots=True)
class CurrencyChanged:
    user_id: int
    transaction_id: int
    kind: str
    amount: int
    signed_amount: int
    balance: int
    description: str


@dataclass(frozen=True, slots=True)
class StreakExtended:
    user_id: int
    name: str
    days: int
    day: date


GamificationEvent = Union[XPAwarded, LevelUp, AchievementUnlocked, BadgeGranted, CurrencyChanged, StreakExtended]

Handler = Callable[[Any], Awaitable[None]]


def stage_event(db: AsyncSession, event: GamificationEvent) -> None:
    """Queue an event to be emitted when ``db`` commits."""
    db.info.setdefault(_PENDING_KEY, []).append(event)


def pending_events(db: AsyncSession) -> list[GamificationEvent]:
    """Events staged on ``db`` and not yet committed."""
    return list(db.info.get(_PENDING_KEY, []))


class EventBus:
    """In-process message queue dispatching events to handlers keyed by event type.

    ``run()`` consumes the queue forever (started as a task in the app lifespan);
    ``drain()`` dispatches whatever is queued and returns, for shutdown and tests.
    A failing handler is logged and never affects other handlers or the producer.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[GamificationEvent] = asyncio.Queue(maxsize=maxsize)
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def emit(self, event: GamificationEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("event_dropped", event_type=type(event).__name__, user_id=event.user_id)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _dispatch(self, event: GamificationEvent) -> None:
        for handler in self._handlers.get(type(event), []):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__name__", repr(handler)),
                )

    async def run(self) -> None:
        """Consume events until cancelled."""
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def drain(self) -> int:
        """Dispatch all queued events (including ones queued by handlers). Returns count."""
        handled = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()
            handled += 1
        return handled


_bus: EventBus | None = None


def init_event_bus(maxsize: int = 0) -> EventBus:
    """Create the process-wide bus. Replaces any previous one."""
    global _bus  # noqa: PLW0603
    _bus = EventBus(maxsize=maxsize)
    return _bus


def get_event_bus() -> EventBus | None:
    return _bus


def close_event_bus() -> None:
    global _bus  # noqa: PLW0603
    _bus = None


@sa_event.listens_for(Session, "after_commit")
def _emit_after_commit(session: Session) -> None:
    # Releasing a savepoint is not the end of the transaction
    if session.in_nested_transaction():
        return
    staged = session.info.pop(_PENDING_KEY, None)
    if not staged:
        return
    if _bus is None:
        logger.debug("events_discarded_no_bus", count=len(staged))
        return
    for event in staged:
        _bus.emit(event)


@sa_event.listens_for(Session, "after_soft_rollback")
def _discard_after_rollback(session: Session, previous_transaction: SessionTransaction) -> None:
    # Rolling back a savepoint keeps the enclosing transaction and its events
    if previous_transaction.nested:
        return
    session.info.pop(_PENDING_KEY, None)
