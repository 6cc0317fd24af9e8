"""
Configuration centralisée — DevFleet.

Charge les variables d'environnement depuis .env et expose
un objet Settings validé via Pydantic.
"""

from __future__ import annotations

import base64
import binascii
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

# ── Racine du projet ────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# ── Charger .env ────────────────────────────
_env_path = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Paramètres globaux chargés depuis les variables d'environnement."""

    # GitHub App
    github_app_id: str = Field(default="")
    github_app_private_key: str = Field(default="", description="Clé PEM encodée en base64")
    github_app_webhook_secret: str = Field(default="")
    github_api_url: str = Field(default="https://api.github.com")

    # Sandbox (E2B)
    e2b_api_key: str = Field(default="")
    sandbox_template: str = Field(default="devfleet")
    sandbox_timeout_seconds: int = Field(default=3600)
    sandbox_workdir: str = Field(default="/devfleet")

    # LLM CLI (Claude)
    anthropic_api_key: str = Field(default="")
    claude_model: str = Field(default="claude-sonnet-4-5-20250929")
    claude_timeout_seconds: int = Field(default=3600)

    # Orchestration
    check_run_name: str = Field(default="DevFleet")
    agent_max_attempts: int = Field(default=3, ge=1)

    # Stockage
    database_url: str = Field(default="sqlite:///./devfleet.db")

    # Général
    log_level: str = Field(default="INFO")

    model_config = {
        "env_file": str(_env_path),
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }

    # ── Helpers ──────────────────────────────

    @property
    def github_app_configured(self) -> bool:
        return bool(self.github_app_id and self.github_app_private_key)

    @property
    def webhook_secret_configured(self) -> bool:
        return bool(self.github_app_webhook_secret)

    @property
    def sandbox_configured(self) -> bool:
        return bool(self.e2b_api_key and self.anthropic_api_key)

    @property
    def decoded_private_key(self) -> str:
        """Décode la clé privée de la GitHub App (stockée en base64)."""
        raw = self.github_app_private_key.strip()
        if raw.startswith("-----BEGIN"):
            return raw
        try:
            return base64.b64decode(raw).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ValueError("GITHUB_APP_PRIVATE_KEY n'est pas un base64 valide.") from exc


@lru_cache
def get_settings() -> Settings:
    """Retourne l'instance Settings partagée (lue une seule fois)."""
    return Settings()
