"""Progression system: experience, levels, carry-over."""

from .leveling import (
    apply_experience,
    levels_gained,
    progress_ratio,
)

__all__ = [
    "apply_experience",
    "levels_gained",
    "progress_ratio",
]
