"""Experience and level progression for the character and skills."""

from __future__ import annotations

from dataclasses import replace

from vault.models import ProgressionEntity


def apply_experience(entity: ProgressionEntity, delta: int) -> ProgressionEntity:
    """Add ``delta`` experience and carry it over into as many levels as it buys.

    Each level-up consumes the current threshold and raises the next one by
    the entity's increment, so the loop runs once per level gained.
    """
    if delta < 0:
        raise ValueError(f"Experience delta must be non-negative, got {delta}")
    if entity.experience_threshold < 1:
        raise ValueError(f"Experience threshold must be positive, got {entity.experience_threshold}")

    experience = entity.current_experience + delta
    level = entity.level
    threshold = entity.experience_threshold
    while experience >= threshold:
        experience -= threshold
        level += 1
        threshold += entity.threshold_increment

    return replace(
        entity,
        level=level,
        current_experience=experience,
        experience_threshold=threshold,
    )


def levels_gained(before: ProgressionEntity, after: ProgressionEntity) -> int:
    return max(0, after.level - before.level)


def progress_ratio(entity: ProgressionEntity) -> float:
    """Fraction of the way to the next level, in [0, 1)."""
    return entity.current_experience / entity.experience_threshold
