"""Achievement rule tests: thresholds over the fixed stat set."""

import pytest

from questlog.gamification.achievements import (
    ACHIEVEMENTS,
    ACHIEVEMENTS_BY_CODE,
    StatField,
    achievement_progress,
    is_satisfied,
    newly_unlocked,
    stat_value,
)
from questlog.gamification.schemas import UserStats


class TestDefinitions:
    def test_codes_unique(self):
        assert len(ACHIEVEMENTS_BY_CODE) == len(ACHIEVEMENTS)

    def test_location_type_rules_name_a_type(self):
        for a in ACHIEVEMENTS:
            if a.field is StatField.LOCATION_TYPE:
                assert a.location_type
            else:
                assert a.location_type is None

    def test_rewards_positive(self):
        assert all(a.xp_reward > 0 and a.threshold > 0 for a in ACHIEVEMENTS)


class TestRules:
    def test_threshold_inclusive(self):
        explorer = ACHIEVEMENTS_BY_CODE["explorer"]
        assert not is_satisfied(UserStats(locations_count=9), explorer)
        assert is_satisfied(UserStats(locations_count=10), explorer)

    def test_location_type_count(self):
        first_bite = ACHIEVEMENTS_BY_CODE["first_bite"]
        assert stat_value(UserStats(), first_bite) == 0
        assert is_satisfied(UserStats(location_type_counts={"RESTAURANT": 1}), first_bite)
        assert not is_satisfied(UserStats(location_type_counts={"BAR": 5}), first_bite)

    def test_newly_unlocked_skips_existing(self):
        stats = UserStats(locations_count=12)
        assert [a.code for a in newly_unlocked(stats, set())] == ["first_steps", "explorer"]
        assert [a.code for a in newly_unlocked(stats, {"first_steps"})] == ["explorer"]

    def test_nothing_for_empty_stats(self):
        assert newly_unlocked(UserStats(), set()) == []

    def test_mixed_categories(self):
        stats = UserStats(streak_days=7, workouts_count=1, level=5)
        codes = {a.code for a in newly_unlocked(stats, set())}
        assert codes == {"consistent", "first_workout", "level_5"}

    def test_negative_stats_rejected(self):
        with pytest.raises(ValueError):
            UserStats(visits_count=-1)


def test_progress_caps_at_target():
    stats = UserStats(locations_count=75)
    progress = {p.code: p for p in achievement_progress(stats, {"first_steps"})}
    assert progress["first_steps"].unlocked is True
    assert progress["adventurer"].current == 50
    assert progress["globetrotter"].current == 75
    assert progress["globetrotter"].target == 100
    assert progress["globetrotter"].unlocked is False
