"""
Agent de base (abstrait) — DevFleet.

Chaque agent hérite de BaseAgent et implémente sa logique métier.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from devfleet.models import PullRequestEvent


class BaseAgent(ABC):
    """Classe abstraite pour tous les agents DevFleet."""

    name: str = "BaseAgent"

    def __init__(self):
        self.logger = logging.getLogger(f"devfleet.agent.{self.name}")

    @abstractmethod
    async def run(self, context: PullRequestEvent, **kwargs: Any) -> Any:
        """Exécute la logique de l'agent et retourne son résultat typé."""
        ...

    def _log_start(self, context: PullRequestEvent, label: str = "") -> None:
        suffix = f" [{label}]" if label else ""
        self.logger.info(f"[{self.name}]{suffix} Démarrage — PR {context.full_name}#{context.pr_number}")

    def _log_done(self, context: PullRequestEvent, label: str = "") -> None:
        suffix = f" [{label}]" if label else ""
        self.logger.info(f"[{self.name}]{suffix} Terminé — PR {context.full_name}#{context.pr_number}")