"""Level curve tests: values MUST match the client level bars."""

import pytest

from questlog.gamification.levels import (
    HERO_CURVE,
    SKILL_CURVE,
    compute_level,
    cumulative_xp_for_level,
    level_for_total_xp,
    level_table,
    xp_required_for_level,
)


class TestHeroCurve:
    """Hero curve: 250 XP for level 1->2, doubling per level."""

    @pytest.mark.parametrize(
        ("total_xp", "level"),
        [(0, 1), (249, 1), (250, 2), (749, 2), (750, 3), (1749, 3), (1750, 4)],
    )
    def test_boundaries(self, total_xp, level):
        assert compute_level(total_xp) == level

    def test_xp_into_level(self):
        result = level_for_total_xp(300)
        assert result["level"] == 2
        assert result["xp_into_level"] == 50
        assert result["xp_for_next_level"] == 500
        assert result["cumulative_xp"] == 250

    def test_negative_xp_is_level_1(self):
        assert compute_level(-10) == 1
        assert level_for_total_xp(-10)["xp_into_level"] == 0


class TestSkillCurve:
    """Skill curve: 100 XP for level 1->2, x1.5 per level, floored each step."""

    def test_per_level_requirements(self):
        assert [xp_required_for_level(lvl, SKILL_CURVE) for lvl in range(1, 6)] == [100, 150, 225, 337, 505]

    def test_cumulative_thresholds(self):
        assert cumulative_xp_for_level(1, SKILL_CURVE) == 0
        assert cumulative_xp_for_level(2, SKILL_CURVE) == 100
        assert cumulative_xp_for_level(3, SKILL_CURVE) == 250
        assert cumulative_xp_for_level(4, SKILL_CURVE) == 475

    def test_boundaries(self):
        assert level_for_total_xp(99, SKILL_CURVE)["level"] == 1
        assert level_for_total_xp(100, SKILL_CURVE)["level"] == 2
        assert level_for_total_xp(474, SKILL_CURVE)["level"] == 3
        assert level_for_total_xp(475, SKILL_CURVE)["level"] == 4


class TestMonotonicity:
    """More XP never means a lower level, on either curve."""

    @pytest.mark.parametrize("curve", [HERO_CURVE, SKILL_CURVE])
    def test_level_never_decreases(self, curve):
        previous = 1
        for xp in range(0, 20_000, 7):
            level = level_for_total_xp(xp, curve)["level"]
            assert level >= previous
            previous = level

    @pytest.mark.parametrize("curve", [HERO_CURVE, SKILL_CURVE])
    def test_level_matches_cumulative_threshold(self, curve):
        for level in range(1, 12):
            threshold = cumulative_xp_for_level(level, curve)
            assert level_for_total_xp(threshold, curve)["level"] == level
            if threshold > 0:
                assert level_for_total_xp(threshold - 1, curve)["level"] == level - 1


def test_level_table_is_consistent():
    table = level_table(HERO_CURVE, max_level=5)
    assert [row["level"] for row in table] == [1, 2, 3, 4, 5]
    assert [row["cumulative"] for row in table] == [0, 250, 750, 1750, 3750]
    for row, nxt in zip(table, table[1:]):
        assert nxt["cumulative"] == row["cumulative"] + row["xp_required"]
