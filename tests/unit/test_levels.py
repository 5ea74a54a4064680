"""Tests for the level curve and static level table."""

import pytest

from crolars.errors import InvalidAmount
from crolars.gamification.levels import (
    level_definition,
    level_for,
    level_table,
    min_xp_for,
    requirement_for,
    xp_for_next_level,
)


class TestRequirements:
    def test_first_requirements(self) -> None:
        assert [requirement_for(n) for n in range(1, 6)] == [100, 120, 144, 172, 206]

    def test_cumulative_thresholds(self) -> None:
        assert [min_xp_for(n) for n in range(1, 7)] == [0, 100, 220, 364, 536, 742]

    def test_invalid_level(self) -> None:
        with pytest.raises(InvalidAmount):
            requirement_for(0)


class TestLevelFor:
    @pytest.mark.parametrize(
        ("total_xp", "level"),
        [(0, 1), (99, 1), (100, 2), (219, 2), (220, 3), (535, 4), (536, 5), (742, 6)],
    )
    def test_boundaries(self, total_xp: int, level: int) -> None:
        assert level_for(total_xp) == level

    def test_monotonic(self) -> None:
        levels = [level_for(xp) for xp in range(0, 5000, 7)]
        assert levels == sorted(levels)

    def test_consistent_with_thresholds(self) -> None:
        for level in range(1, 25):
            assert level_for(min_xp_for(level)) == level
            if level > 1:
                assert level_for(min_xp_for(level) - 1) == level - 1

    @pytest.mark.parametrize("bad", [-1, 1.5, "100", True])
    def test_rejects_invalid_input(self, bad: object) -> None:
        with pytest.raises(InvalidAmount):
            level_for(bad)  # type: ignore[arg-type]


class TestNextLevelProgress:
    def test_fresh_user(self) -> None:
        progress = xp_for_next_level(0)
        assert progress.current_level_xp == 0
        assert progress.required_xp == 100
        assert progress.percent == 0.0

    def test_partial_progress(self) -> None:
        progress = xp_for_next_level(150)
        assert progress.current_level_xp == 50
        assert progress.required_xp == 120
        assert progress.percent == 41.67

    def test_exact_level_start(self) -> None:
        progress = xp_for_next_level(220)
        assert progress.current_level_xp == 0
        assert progress.required_xp == 144


class TestLevelTable:
    def test_named_levels(self) -> None:
        fifth = level_definition(5)
        assert fifth.name == "Committed"
        assert fifth.reward_crolars == 150
        assert fifth.reward_badge == "consistency"
        assert fifth.milestone_badge == "level_5"

    def test_milestone_only_every_fifth_level(self) -> None:
        assert level_definition(4).milestone_badge is None
        assert level_definition(10).milestone_badge == "level_10"

    def test_levels_past_table_keep_growing_rewards(self) -> None:
        assert level_definition(15).reward_crolars == 1500
        assert level_definition(16).reward_crolars == 1600
        assert level_definition(16).reward_badge is None

    def test_table_is_ordered(self) -> None:
        table = level_table(20)
        assert [d.level for d in table] == list(range(1, 21))
        assert [d.min_xp for d in table] == sorted(d.min_xp for d in table)
