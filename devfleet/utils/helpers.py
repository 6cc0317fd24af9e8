"""
Utilitaires divers — DevFleet.
"""

from __future__ import annotations

from devfleet.models import FindingSeverity

# Limite GitHub sur output.summary / output.text d'un Check Run
GITHUB_CHECK_TEXT_LIMIT = 65535

SEVERITY_EMOJI = {
    FindingSeverity.CRITICAL: "🚨",
    FindingSeverity.HIGH: "🔴",
    FindingSeverity.MEDIUM: "🟡",
    FindingSeverity.LOW: "🔵",
}


def truncate(text: str, max_len: int = GITHUB_CHECK_TEXT_LIMIT) -> str:
    """Tronque un texte en gardant le début."""
    if len(text) <= max_len:
        return text
    marker = "\n…[tronqué]"
    return text[: max_len - len(marker)] + marker


def severity_emoji(severity: FindingSeverity) -> str:
    return SEVERITY_EMOJI.get(severity, "")


def pluralize(count: int, word: str) -> str:
    """`1 issue`, `2 issues`."""
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def percentage(part: int, total: int) -> float:
    """Pourcentage brut, 0 quand total est nul."""
    if total == 0:
        return 0.0
    return part / total * 100
