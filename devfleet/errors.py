"""
Erreurs — DevFleet.

SafeError porte un message exposable au client HTTP. Les erreurs
d'agent distinguent ce qui peut être retenté de ce qui est définitif.
"""

from __future__ import annotations


class SafeError(Exception):
    """Erreur dont le message peut être renvoyé tel quel au client."""

    def __init__(self, safe_message: str, status_code: int = 400):
        super().__init__(safe_message)
        self.safe_message = safe_message
        self.status_code = status_code


class AgentExecutionError(Exception):
    """Échec d'un agent pouvant être retenté."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class FatalAgentError(AgentExecutionError):
    """Échec d'un agent à ne jamais retenter (sortie illisible, clé invalide…)."""
