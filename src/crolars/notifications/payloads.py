"""Typed notification payloads, one variant per producer.

Each variant knows its ``type``, its preference ``category`` and how to
render title, message, action link and metadata. Consumers switch on ``type``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Union


class _Payload:
    type: ClassVar[str]
    category: ClassVar[str]
    action_url: ClassVar[str | None] = None

    def title(self) -> str:
        raise NotImplementedError

    def message(self) -> str:
        raise NotImplementedError

    def link_url(self) -> str | None:
        return self.action_url

    def metadata(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]


@dataclass(frozen=True)
class XPGained(_Payload):
    type: ClassVar[str] = "xp_gained"
    category: ClassVar[str] = "ACHIEVEMENT"
    action_url: ClassVar[str | None] = "/profile/progress"

    amount: int
    source: str
    total_xp: int

    def title(self) -> str:
        return "XP earned"

    def message(self) -> str:
        return f"+{self.amount} XP from {self.source}"


@dataclass(frozen=True)
class LevelUpReached(_Payload):
    type: ClassVar[str] = "level_up"
    category: ClassVar[str] = "ACHIEVEMENT"
    action_url: ClassVar[str | None] = "/profile/progress"

    old_level: int
    new_level: int
    total_xp: int
    level_name: str
    crolars_reward: int

    def title(self) -> str:
        return "Level up!"

    def message(self) -> str:
        reward = f" (+{self.crolars_reward} Crolars)" if self.crolars_reward else ""
        return f"You reached level {self.new_level}: {self.level_name}{reward}"


@dataclass(frozen=True)
class AchievementEarned(_Payload):
    type: ClassVar[str] = "achievement_unlocked"
    category: ClassVar[str] = "ACHIEVEMENT"
    action_url: ClassVar[str | None] = "/profile/achievements"

    slug: str
    name: str
    rarity: str
    xp_reward: int
    crolars_reward: int
    requires_claim: bool

    def title(self) -> str:
        return "Achievement unlocked!"

    def message(self) -> str:
        if self.requires_claim:
            return f"{self.name}: claim your reward"
        return f"{self.name}: +{self.xp_reward} XP, +{self.crolars_reward} Crolars"


@dataclass(frozen=True)
class BadgeEarned(_Payload):
    type: ClassVar[str] = "badge_earned"
    category: ClassVar[str] = "ACHIEVEMENT"
    action_url: ClassVar[str | None] = "/profile/badges"

    slug: str
    name: str
    rarity: str

    def title(self) -> str:
        return f'Badge earned: "{self.name}"'

    def message(self) -> str:
        return f"You earned the {self.rarity.lower()} badge {self.name}"


@dataclass(frozen=True)
class CurrencyMoved(_Payload):
    type: ClassVar[str] = "currency_changed"
    category: ClassVar[str] = "SYSTEM"
    action_url: ClassVar[str | None] = "/wallet"

    transaction_id: int
    kind: str
    amount: int
    signed_amount: int
    balance: int
    description: str

    def title(self) -> str:
        return "Crolars earned" if self.signed_amount > 0 else "Crolars spent"

    def message(self) -> str:
        sign = "+" if self.signed_amount > 0 else "-"
        return f"{sign}{self.amount} Crolars - {self.description}"


@dataclass(frozen=True)
class StreakMilestone(_Payload):
    type: ClassVar[str] = "streak_milestone"
    category: ClassVar[str] = "ACHIEVEMENT"
    action_url: ClassVar[str | None] = "/profile/progress"

    name: str
    days: int

    def title(self) -> str:
        return f"{self.days}-day streak!"

    def message(self) -> str:
        return f"Your {self.name.replace('_', ' ')} streak reached {self.days} days"


@dataclass(frozen=True)
class SystemAnnouncement(_Payload):
    type: ClassVar[str] = "system_announcement"
    category: ClassVar[str] = "SYSTEM"

    headline: str
    body: str
    link: str | None = None

    def title(self) -> str:
        return self.headline

    def message(self) -> str:
        return self.body

    def link_url(self) -> str | None:
        return self.link


NotificationPayload = Union[
    XPGained, LevelUpReached, AchievementEarned, BadgeEarned, CurrencyMoved, StreakMilestone, SystemAnnouncement
]
