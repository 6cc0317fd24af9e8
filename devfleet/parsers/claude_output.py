"""
Parseur de la sortie du CLI Claude.

Avec `--output-format json --verbose`, le CLI imprime sur stdout un tableau
JSON de messages ; le dernier bilan est l'élément `type == "result"`.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from pydantic import ValidationError

from devfleet.models import AgentStructuredOutput, ClaudeResult, Finding

logger = logging.getLogger("devfleet.parser")


def parse_claude_result(stdout: str) -> Optional[ClaudeResult]:
    """Élément `result` de la sortie, ou None si absent / illisible."""
    try:
        parsed = json.loads(stdout.strip())
    except (json.JSONDecodeError, AttributeError):
        return None

    if not isinstance(parsed, list):
        return None

    for item in parsed:
        if isinstance(item, dict) and item.get("type") == "result":
            try:
                return ClaudeResult.model_validate(item)
            except ValidationError as exc:
                logger.warning(f"Élément result invalide : {exc}")
                return None
    return None


def parse_error_line(stdout: str) -> Optional[str]:
    """
    Message d'erreur du CLI quand il sort en échec.

    On lit la dernière ligne non vide : si c'est un objet `result` avec
    `is_error`, on renvoie son champ `result` (éventuellement vide).
    """
    lines = [line for line in (stdout or "").splitlines() if line.strip()]
    if not lines:
        return None
    last = lines[-1].strip()
    if not last.startswith("{"):
        return None
    try:
        parsed = json.loads(last)
    except json.JSONDecodeError:
        logger.debug("Dernière ligne du CLI non JSON")
        return None
    if isinstance(parsed, dict) and parsed.get("type") == "result" and parsed.get("is_error"):
        return parsed.get("result") or ""
    return None


def extract_findings(result: Optional[ClaudeResult]) -> list[Finding]:
    """Findings de la sortie structurée ; [] si absente ou non conforme."""
    if result is None or not result.structured_output:
        return []
    try:
        return AgentStructuredOutput.model_validate(result.structured_output).findings
    except ValidationError as exc:
        logger.warning(f"Sortie structurée non conforme : {exc.error_count()} erreur(s)")
        return []
