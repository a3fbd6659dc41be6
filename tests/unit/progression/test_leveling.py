"""Tests for experience carry-over and level thresholds."""

import pytest

from progression import apply_experience, levels_gained, progress_ratio
from vault.models import EntityKind, ProgressionEntity


def _character(level=1, exp=0, threshold=1000) -> ProgressionEntity:
    return ProgressionEntity(
        kind=EntityKind.CHARACTER,
        name="character",
        level=level,
        current_experience=exp,
        experience_threshold=threshold,
        threshold_increment=1000,
    )


def _skill(level=1, exp=0, threshold=100) -> ProgressionEntity:
    return ProgressionEntity(
        kind=EntityKind.SKILL,
        name="数学",
        level=level,
        current_experience=exp,
        experience_threshold=threshold,
        threshold_increment=100,
    )


class TestApplyExperience:
    def test_below_threshold_just_accumulates(self):
        after = apply_experience(_character(exp=100), 200)
        assert (after.level, after.current_experience, after.experience_threshold) == (1, 300, 1000)

    def test_single_level_up_carries_remainder(self):
        after = apply_experience(_character(exp=900), 300)
        assert (after.level, after.current_experience, after.experience_threshold) == (2, 200, 2000)

    def test_exact_threshold_levels_up_with_zero_left(self):
        after = apply_experience(_character(exp=0), 1000)
        assert (after.level, after.current_experience, after.experience_threshold) == (2, 0, 2000)

    def test_multi_level_character(self):
        # 1000 + 2000 + 3000 consumed, 500 carried
        after = apply_experience(_character(), 6500)
        assert (after.level, after.current_experience, after.experience_threshold) == (4, 500, 4000)

    def test_multi_level_skill(self):
        # 100 + 200 + 300 consumed, 50 carried
        after = apply_experience(_skill(), 650)
        assert (after.level, after.current_experience, after.experience_threshold) == (4, 50, 400)

    def test_zero_delta_is_identity(self):
        before = _skill(level=3, exp=42, threshold=300)
        assert apply_experience(before, 0) == before

    def test_input_is_not_mutated(self):
        before = _character(exp=900)
        apply_experience(before, 5000)
        assert before.current_experience == 900
        assert before.level == 1

    def test_negative_delta_rejected(self):
        with pytest.raises(ValueError):
            apply_experience(_character(), -1)

    def test_non_positive_threshold_rejected(self):
        with pytest.raises(ValueError):
            apply_experience(_character(threshold=0), 10)

    @pytest.mark.parametrize("delta", [0, 1, 99, 100, 101, 599, 600, 12345])
    def test_experience_stays_below_threshold(self, delta):
        after = apply_experience(_skill(exp=37), delta)
        assert 0 <= after.current_experience < after.experience_threshold
        assert after.level >= 1

    def test_total_experience_is_conserved(self):
        before = _skill(exp=20)
        after = apply_experience(before, 1000)
        consumed = sum(100 * lvl for lvl in range(before.level, after.level))
        assert consumed + after.current_experience == before.current_experience + 1000


def test_levels_gained():
    before = _character()
    assert levels_gained(before, apply_experience(before, 3000)) == 2
    assert levels_gained(before, before) == 0


def test_progress_ratio():
    assert progress_ratio(_skill(exp=25, threshold=100)) == 0.25
    assert progress_ratio(_character()) == 0.0
