from __future__ import annotations

from typing import List

from ..app.models import Song, Theme
from .ranking import sort_by_rank
from .types import DEFAULT_LIMITS, TierLimits


def _numbered(songs: List[Song]) -> List[str]:
    ordered = sort_by_rank(songs)
    return [f'{index}. "{song.title}" by {song.artist}' for index, song in enumerate(ordered, start=1)]


def export_funnel_summary(theme: Theme, limits: TierLimits = DEFAULT_LIMITS) -> str:
    """Render the funnel as a Markdown digest, pick first."""

    lines: List[str] = [f"# {theme.title}", f"Theme: {theme.raw_theme}", ""]
    if theme.interpretation:
        lines.extend([f"Interpretation: {theme.interpretation}", ""])
    if theme.pick is not None:
        lines.extend(["## PICK", f'- "{theme.pick.title}" by {theme.pick.artist}', ""])
    sections = (
        ("Finalists", theme.finalists, limits.finalists),
        ("Semifinalists", theme.semifinalists, limits.semifinalists),
        ("Candidates", theme.candidates, limits.candidates),
    )
    for label, songs, limit in sections:
        if not songs:
            continue
        lines.append(f"## {label} ({len(songs)}/{limit})")
        lines.extend(_numbered(songs))
        lines.append("")
    if theme.deadline is not None:
        lines.append(f"Deadline: {theme.deadline.strftime('%Y-%m-%d %H:%M %Z').strip()}")
    return "\n".join(lines)
