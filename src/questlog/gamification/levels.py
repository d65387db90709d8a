"""Level curves and level computation.

Two independent geometric curves:
  hero:  250 XP for level 1→2, x2 per level (overall journey, levels slowly)
  skill: 100 XP for level 1→2, x1.5 per level (per-app mastery, levels faster)

The per-level requirement is floored at every step, so the skill curve reads
100, 150, 225, 337, 505, ... These values MUST match the client level bars.
"""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class LevelCurve:
    name: str
    base: int
    scale: float


HERO_CURVE = LevelCurve(name="hero", base=250, scale=2.0)
SKILL_CURVE = LevelCurve(name="skill", base=100, scale=1.5)

CURVES: dict[str, LevelCurve] = {HERO_CURVE.name: HERO_CURVE, SKILL_CURVE.name: SKILL_CURVE}


def xp_required_for_level(level: int, curve: LevelCurve = HERO_CURVE) -> int:
    """XP needed to complete ``level`` (i.e. to go from level to level + 1)."""
    required = curve.base
    for _ in range(1, max(level, 1)):
        required = math.floor(required * curve.scale)
    return required


def cumulative_xp_for_level(level: int, curve: LevelCurve = HERO_CURVE) -> int:
    """Total XP needed to reach ``level`` from zero."""
    total = 0
    required = curve.base
    for _ in range(1, max(level, 1)):
        total += required
        required = math.floor(required * curve.scale)
    return total


def level_for_total_xp(total_xp: int, curve: LevelCurve = HERO_CURVE) -> dict:
    """Compute level info from total XP.

    Walks the cumulative thresholds until the next one exceeds ``total_xp``.
    Negative XP is treated as zero; level 1 is the floor.
    """
    total_xp = max(int(total_xp), 0)

    level = 1
    cumulative = 0
    required = curve.base
    while cumulative + required <= total_xp:
        cumulative += required
        level += 1
        required = math.floor(required * curve.scale)

    return {
        "level": level,
        "xp_into_level": total_xp - cumulative,
        "xp_for_next_level": required,
        "cumulative_xp": cumulative,
    }


def compute_level(total_xp: int) -> int:
    """Hero level for ``total_xp``. The cached ``UserProgress.level`` must equal this."""
    return level_for_total_xp(total_xp, HERO_CURVE)["level"]


def level_table(curve: LevelCurve = HERO_CURVE, max_level: int = 10) -> list[dict]:
    """Reference table of per-level and cumulative XP, levels 1..max_level."""
    return [
        {
            "level": level,
            "xp_required": xp_required_for_level(level, curve),
            "cumulative": cumulative_xp_for_level(level, curve),
        }
        for level in range(1, max_level + 1)
    ]
