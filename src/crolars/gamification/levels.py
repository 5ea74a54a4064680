"""Level curve and static level table.

Level 1 starts at 0 XP. Advancing from level 1 to 2 costs 100 XP, and each
following step costs the previous one times 1.2, rounded down. Integer math
(``r * 6 // 5``) keeps the curve exact for every level.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from crolars.errors import InvalidAmount

BASE_REQUIREMENT = 100
MILESTONE_EVERY = 5

# (name, reward_crolars, reward_badge) for levels 1..15
LEVEL_TABLE: list[tuple[str, int, str | None]] = [
    ("Novice", 50, None),
    ("Apprentice", 75, None),
    ("Student", 100, "first_step"),
    ("Dedicated", 125, None),
    ("Committed", 150, "consistency"),
    ("Advanced", 200, None),
    ("Expert", 250, None),
    ("Master", 300, "mastery"),
    ("Sage", 400, None),
    ("Legend", 500, "academic_legend"),
    ("Titan", 600, None),
    ("Immortal", 750, "immortal_of_knowledge"),
    ("Divine", 1000, None),
    ("Transcendent", 1250, "transcendence"),
    ("Omniscient", 1500, "omniscience"),
]
REWARD_STEP_AFTER_TABLE = 100


@dataclass(frozen=True)
class LevelDefinition:
    level: int
    min_xp: int
    name: str
    reward_crolars: int
    reward_badge: str | None

    @property
    def milestone_badge(self) -> str | None:
        """Synthetic badge granted on every fifth level."""
        if self.level % MILESTONE_EVERY == 0:
            return f"level_{self.level}"
        return None


@dataclass(frozen=True)
class NextLevelProgress:
    current_level_xp: int
    required_xp: int
    percent: float


def requirement_for(level: int) -> int:
    """XP needed to go from ``level`` to ``level + 1``."""
    if level < 1:
        msg = f"Level must be >= 1, got {level}"
        raise InvalidAmount(msg)
    requirement = BASE_REQUIREMENT
    for _ in range(level - 1):
        requirement = requirement * 6 // 5
    return requirement


def _walk(total_xp: int) -> tuple[int, int, int]:
    """Return (level, xp into level, requirement for next level)."""
    if isinstance(total_xp, bool) or not isinstance(total_xp, int) or total_xp < 0:
        msg = f"Total XP must be a non-negative integer, got {total_xp!r}"
        raise InvalidAmount(msg)
    level = 1
    remaining = total_xp
    requirement = BASE_REQUIREMENT
    while remaining >= requirement:
        remaining -= requirement
        level += 1
        requirement = requirement * 6 // 5
    return level, remaining, requirement


def level_for(total_xp: int) -> int:
    """Level reached with ``total_xp`` cumulative XP. Pure and monotonic."""
    return _walk(total_xp)[0]


def xp_for_next_level(total_xp: int) -> NextLevelProgress:
    """Progress-bar view consistent with :func:`level_for`."""
    _, current, required = _walk(total_xp)
    percent = min(round(current / required * 100, 2), 100.0)
    return NextLevelProgress(current_level_xp=current, required_xp=required, percent=percent)


@lru_cache(maxsize=512)
def min_xp_for(level: int) -> int:
    """Cumulative XP at which ``level`` starts."""
    if level < 1:
        msg = f"Level must be >= 1, got {level}"
        raise InvalidAmount(msg)
    total = 0
    requirement = BASE_REQUIREMENT
    for _ in range(level - 1):
        total += requirement
        requirement = requirement * 6 // 5
    return total


def level_definition(level: int) -> LevelDefinition:
    min_xp = min_xp_for(level)
    if level <= len(LEVEL_TABLE):
        name, reward, badge = LEVEL_TABLE[level - 1]
    else:
        name, top_reward, _ = LEVEL_TABLE[-1]
        reward = top_reward + REWARD_STEP_AFTER_TABLE * (level - len(LEVEL_TABLE))
        badge = None
    return LevelDefinition(
        level=level,
        min_xp=min_xp,
        name=name,
        reward_crolars=reward,
        reward_badge=badge,
    )


def level_table(max_level: int = 30) -> list[LevelDefinition]:
    return [level_definition(n) for n in range(1, max_level + 1)]
