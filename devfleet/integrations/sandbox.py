"""
Sandbox E2B — DevFleet.

Enveloppe minimale autour du SDK E2B asynchrone : chaque exécution d'agent
obtient une sandbox éphémère, détruite en fin d'exécution.
"""

from __future__ import annotations

import logging
from typing import Optional

from e2b import CommandResult
from e2b_code_interpreter import AsyncSandbox

from devfleet.config import Settings, get_settings

logger = logging.getLogger("devfleet.sandbox")

DEFAULT_COMMAND_TIMEOUT = 60


class AgentSandbox:
    """Sandbox d'un agent. S'utilise comme context manager async."""

    def __init__(self, sandbox: AsyncSandbox):
        self._sandbox = sandbox

    @property
    def id(self) -> str:
        return self._sandbox.sandbox_id

    async def run_command(
        self,
        command: str,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        cwd: Optional[str] = None,
        background: bool = False,
    ) -> CommandResult:
        """Exécute une commande shell ; lève `CommandExitException` si exit != 0."""
        if background:
            await self._sandbox.commands.run(
                command,
                background=True,
                cwd=cwd,
                timeout=timeout,
                on_stdout=lambda data: logger.debug(f"[{self.id}] stdout {data}"),
                on_stderr=lambda data: logger.debug(f"[{self.id}] stderr {data}"),
            )
            return CommandResult(
                stdout="Background command started successfully",
                stderr="",
                exit_code=0,
                error=None,
            )

        return await self._sandbox.commands.run(
            command, background=False, cwd=cwd, timeout=timeout
        )

    async def kill(self) -> None:
        await self._sandbox.kill()
        logger.debug(f"Sandbox {self.id} détruite")

    async def __aenter__(self) -> "AgentSandbox":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.kill()
        except Exception as kill_exc:
            logger.warning(f"Impossible de détruire la sandbox {self.id} : {kill_exc}")


async def create_agent_sandbox(
    envs: Optional[dict[str, str]] = None,
    settings: Optional[Settings] = None,
) -> AgentSandbox:
    """Crée une sandbox à partir du template configuré."""
    settings = settings or get_settings()
    if not settings.sandbox_configured:
        raise ValueError("E2B_API_KEY non configurée.")

    sandbox = await AsyncSandbox.create(
        template=settings.sandbox_template,
        envs=envs or {},
        api_key=settings.e2b_api_key,
        timeout=settings.sandbox_timeout_seconds,
    )
    logger.info(f"📦 Sandbox {sandbox.sandbox_id} créée (template={settings.sandbox_template})")
    return AgentSandbox(sandbox)
