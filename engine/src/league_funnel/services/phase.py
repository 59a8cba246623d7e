"""Phase derivation from tier occupancy."""

from __future__ import annotations

from typing import Optional, Tuple

from ..app.models import FunnelTier, Theme, ThemePhase
from .funnel import occupancy
from .types import DEFAULT_LIMITS, DEFAULT_THRESHOLDS, PhaseThresholds, TierLimits


def derive_phase(
    theme: Optional[Theme],
    thresholds: PhaseThresholds = DEFAULT_THRESHOLDS,
) -> ThemePhase:
    if theme is None:
        return ThemePhase.IDLE
    counts = occupancy(theme)
    if counts[FunnelTier.PICK]:
        return ThemePhase.COMPLETE
    if counts[FunnelTier.SEMIFINALISTS] >= thresholds.decide_semifinalists:
        return ThemePhase.DECIDE
    if counts[FunnelTier.CANDIDATES] >= thresholds.refine_candidates:
        return ThemePhase.REFINE
    return ThemePhase.BRAINSTORM


def with_derived_phase(theme: Theme, thresholds: PhaseThresholds = DEFAULT_THRESHOLDS) -> Theme:
    phase = derive_phase(theme, thresholds)
    if theme.phase == phase:
        return theme
    return theme.model_copy(update={"phase": phase})


def phase_progress(
    theme: Optional[Theme],
    thresholds: PhaseThresholds = DEFAULT_THRESHOLDS,
    limits: TierLimits = DEFAULT_LIMITS,
) -> Tuple[int, int]:
    """Return ``(current, target)`` counts toward leaving the active phase."""

    phase = derive_phase(theme, thresholds)
    if theme is None or phase == ThemePhase.IDLE:
        return 0, 0
    counts = occupancy(theme)
    if phase == ThemePhase.BRAINSTORM:
        return counts[FunnelTier.CANDIDATES], thresholds.refine_candidates
    if phase == ThemePhase.REFINE:
        return counts[FunnelTier.SEMIFINALISTS], thresholds.decide_semifinalists
    if phase == ThemePhase.DECIDE:
        return counts[FunnelTier.FINALISTS], min(thresholds.decide_finalists_target, limits.finalists)
    return 1, 1
