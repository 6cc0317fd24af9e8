"""
Logging — DevFleet.

Un seul handler Rich partagé par les loggers `devfleet.*` et par uvicorn,
pour que les logs du serveur webhook et ceux des workflows d'agents
s'affichent au même format. Les libs bavardes (HTTP, PyGithub, E2B,
SQLAlchemy) sont ramenées à WARNING.
"""

from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from devfleet.config import get_settings

ROOT_LOGGER = "devfleet"
SERVER_LOGGERS = ("uvicorn", "uvicorn.error")
NOISY_LIBRARIES = ("urllib3", "httpx", "httpcore", "github", "sqlalchemy.engine", "e2b", "uvicorn.access")

_handler: Optional[RichHandler] = None


def _resolve_level(level: Optional[str]) -> int:
    name = (level or get_settings().log_level).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Optional[str] = None) -> RichHandler:
    """Installe le handler Rich (une seule fois) et applique le niveau demandé.

    Un second appel ne crée pas de nouveau handler : il ajuste seulement
    le niveau, ce qui permet à la CLI de passer en DEBUG après coup.
    """
    global _handler
    resolved = _resolve_level(level)

    if _handler is None:
        # markup=False : les messages contiennent des labels « [HIGH] » et des chemins
        _handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
        _handler.setFormatter(logging.Formatter("%(name)s — %(message)s"))

        root = logging.getLogger(ROOT_LOGGER)
        root.handlers.clear()
        root.addHandler(_handler)

        for name in SERVER_LOGGERS:
            server_logger = logging.getLogger(name)
            server_logger.handlers = [_handler]
            server_logger.propagate = False

        for lib in NOISY_LIBRARIES:
            logging.getLogger(lib).setLevel(logging.WARNING)

    _handler.setLevel(resolved)
    logging.getLogger(ROOT_LOGGER).setLevel(resolved)
    for name in SERVER_LOGGERS:
        logging.getLogger(name).setLevel(resolved)
    return _handler
