"""Tests de l'enveloppe de sandbox E2B."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from devfleet.integrations.sandbox import AgentSandbox, create_agent_sandbox


def _raw_sandbox():
    raw = MagicMock()
    raw.sandbox_id = "sbx-123"
    raw.commands.run = AsyncMock(return_value=MagicMock(stdout="ok", stderr="", exit_code=0))
    raw.kill = AsyncMock()
    return raw


class TestAgentSandbox:

    @pytest.mark.asyncio
    async def test_foreground_command(self):
        raw = _raw_sandbox()
        sandbox = AgentSandbox(raw)

        result = await sandbox.run_command("git status", timeout=30, cwd="/devfleet")

        assert result.stdout == "ok"
        raw.commands.run.assert_awaited_once_with(
            "git status", background=False, cwd="/devfleet", timeout=30
        )

    @pytest.mark.asyncio
    async def test_background_command_reported_started(self):
        raw = _raw_sandbox()
        sandbox = AgentSandbox(raw)

        result = await sandbox.run_command("npm run dev", background=True)

        assert result.exit_code == 0
        assert result.stdout == "Background command started successfully"
        assert raw.commands.run.call_args.kwargs["background"] is True

    @pytest.mark.asyncio
    async def test_context_manager_kills(self):
        raw = _raw_sandbox()

        with pytest.raises(RuntimeError):
            async with AgentSandbox(raw):
                raise RuntimeError("agent crashed")

        raw.kill.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_kill_failure_does_not_mask_error(self):
        raw = _raw_sandbox()
        raw.kill.side_effect = RuntimeError("already gone")

        async with AgentSandbox(raw) as sandbox:
            assert sandbox.id == "sbx-123"


class TestCreateAgentSandbox:

    @pytest.mark.asyncio
    async def test_uses_template_and_timeout(self, settings):
        raw = _raw_sandbox()
        with patch(
            "devfleet.integrations.sandbox.AsyncSandbox.create", new=AsyncMock(return_value=raw)
        ) as create:
            sandbox = await create_agent_sandbox({"ANTHROPIC_API_KEY": "k"}, settings=settings)

        assert sandbox.id == "sbx-123"
        create.assert_awaited_once_with(
            template="devfleet",
            envs={"ANTHROPIC_API_KEY": "k"},
            api_key="e2b_test",
            timeout=3600,
        )

    @pytest.mark.asyncio
    async def test_requires_api_key(self, settings):
        settings.e2b_api_key = ""
        with pytest.raises(ValueError):
            await create_agent_sandbox(settings=settings)
