"""Tests de l'orchestrateur."""

import pytest
from types import SimpleNamespace
from unittest.mock import MagicMock

from devfleet.db import PrCheckRun, RepoAgent
from devfleet.errors import AgentExecutionError, FatalAgentError
from devfleet.models import AgentRunResult, CheckConclusion, RepoAgentRef
from devfleet.orchestrator import Orchestrator

from conftest import make_claude_result, make_finding


class ScriptedAgent:
    """Agent qui rejoue, pour chaque agent_id, une suite de résultats ou d'exceptions."""

    name = "Scripted"

    def __init__(self, script, calls):
        self._script = script
        self._calls = calls

    async def run(self, context, ref=None, pr_id=None, **kwargs):
        self._calls.append(ref.agent_id)
        outcome = self._script[ref.agent_id].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return AgentRunResult(
            repo_id=ref.repo_id, agent_id=ref.agent_id, pr_id=pr_id, result=outcome, stdout="[]"
        )


def _github():
    gh = MagicMock()
    gh.create_check_run.return_value = SimpleNamespace(id=321)
    gh.post_review.return_value = {"posted": False, "comment_count": 0, "fallback": False}
    return gh


def _orchestrator(settings, session_factory, gh, script):
    calls = []
    orchestrator = Orchestrator(
        github_client=gh,
        session_factory=session_factory,
        settings=settings,
        agent_factory=lambda _gh: ScriptedAgent(script, calls),
    )
    return orchestrator, calls


def _conclusion(gh):
    args = gh.update_check_run.call_args.args
    return args[3], args[4]


class TestOrchestrator:
    """Tests pour l'Orchestrator."""

    @pytest.mark.asyncio
    async def test_success_persists_and_concludes(self, settings, session_factory, session, seeded, pr_event):
        """Un agent sans finding bloquant → success, une ligne pr_check_runs."""
        gh = _github()
        script = {"agent_sec": [make_claude_result(findings=[make_finding("MEDIUM")])]}
        orchestrator, _ = _orchestrator(settings, session_factory, gh, script)

        report = await orchestrator.handle_pull_request(pr_event, None)

        gh.create_check_run.assert_called_once_with("acme", "api", "a1b2c3d4e5f6a7b8c9d0")
        conclusion, output = _conclusion(gh)
        assert conclusion == CheckConclusion.SUCCESS
        assert output.title == "DevFleet"
        assert report.check_run_id == 321
        assert len(report.findings) == 1
        gh.post_review.assert_called_once()
        assert session.query(PrCheckRun).filter_by(status="pass").count() == 1

    @pytest.mark.asyncio
    async def test_no_agents_success_without_persistence(self, settings, session_factory, session, seeded, pr_event):
        session.get(RepoAgent, "ra1").enabled = False
        session.commit()
        gh = _github()
        orchestrator, calls = _orchestrator(settings, session_factory, gh, {})

        report = await orchestrator.handle_pull_request(pr_event, None)

        assert calls == []
        assert report.conclusion == CheckConclusion.SUCCESS
        assert _conclusion(gh)[0] == CheckConclusion.SUCCESS
        assert session.query(PrCheckRun).count() == 0

    @pytest.mark.asyncio
    async def test_blocking_finding_fails(self, settings, session_factory, seeded, pr_event):
        gh = _github()
        script = {"agent_sec": [make_claude_result(findings=[make_finding("CRITICAL")])]}
        orchestrator, _ = _orchestrator(settings, session_factory, gh, script)

        report = await orchestrator.handle_pull_request(pr_event, None)

        assert report.conclusion == CheckConclusion.FAILURE
        findings = gh.post_review.call_args.args[4]
        assert findings[0].severity.value == "CRITICAL"

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, settings, session_factory, seeded, pr_event):
        gh = _github()
        script = {"agent_sec": [AgentExecutionError("clone timeout"), make_claude_result(findings=[])]}
        orchestrator, calls = _orchestrator(settings, session_factory, gh, script)

        report = await orchestrator.handle_pull_request(pr_event, None)

        assert calls == ["agent_sec", "agent_sec"]
        assert report.results[0].succeeded

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self, settings, session_factory, session, seeded, pr_event):
        gh = _github()
        script = {"agent_sec": [FatalAgentError("Invalid API key")]}
        orchestrator, calls = _orchestrator(settings, session_factory, gh, script)

        report = await orchestrator.handle_pull_request(pr_event, None)

        assert calls == ["agent_sec"]
        assert report.conclusion == CheckConclusion.FAILURE
        assert report.results[0].error == "Invalid API key"
        row = session.query(PrCheckRun).one()
        assert row.status == "error"
        assert row.error == "Invalid API key"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, settings, session_factory, seeded, pr_event):
        gh = _github()
        script = {"agent_sec": [RuntimeError(f"boom {i}") for i in range(3)]}
        orchestrator, calls = _orchestrator(settings, session_factory, gh, script)

        report = await orchestrator.handle_pull_request(pr_event, None)

        assert len(calls) == settings.agent_max_attempts
        assert report.results[0].error == "boom 2"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, settings, session_factory, session, seeded, pr_event):
        session.get(RepoAgent, "ra2").enabled = True
        session.commit()
        gh = _github()
        script = {
            "agent_perf": [FatalAgentError("bad output")],
            "agent_sec": [make_claude_result(findings=[])],
        }
        orchestrator, _ = _orchestrator(settings, session_factory, gh, script)

        report = await orchestrator.handle_pull_request(pr_event, None)

        # Ordre des agents conservé (order 0 puis 1)
        assert [r.agent_id for r in report.results] == ["agent_perf", "agent_sec"]
        assert not report.results[0].succeeded
        assert report.results[1].succeeded
        assert report.conclusion == CheckConclusion.FAILURE

    @pytest.mark.asyncio
    async def test_step_error_fails_check_run_and_reraises(self, settings, session_factory, seeded, pr_event):
        gh = _github()
        gh.update_check_run.side_effect = [RuntimeError("GitHub down"), None]
        script = {"agent_sec": [make_claude_result(findings=[])]}
        orchestrator, _ = _orchestrator(settings, session_factory, gh, script)

        with pytest.raises(RuntimeError, match="GitHub down"):
            await orchestrator.handle_pull_request(pr_event, None)

        conclusion, output = _conclusion(gh)
        assert conclusion == CheckConclusion.FAILURE
        assert "GitHub down" in output.summary

    @pytest.mark.asyncio
    async def test_review_failure_is_not_fatal(self, settings, session_factory, seeded, pr_event):
        gh = _github()
        gh.post_review.side_effect = RuntimeError("422")
        script = {"agent_sec": [make_claude_result(findings=[make_finding("LOW")])]}
        orchestrator, _ = _orchestrator(settings, session_factory, gh, script)

        report = await orchestrator.handle_pull_request(pr_event, None)

        assert report.review_posted is False
        assert report.conclusion == CheckConclusion.SUCCESS

    def test_to_result_from_exception(self):
        ref = RepoAgentRef(repo_id="r", repo_agent_id="ra", agent_id="a")
        exc = AgentExecutionError("boom", stdout="partial")

        result = Orchestrator._to_result(ref, exc, "pr1")

        assert result.result is None
        assert result.stdout == "partial"
        assert result.error == "boom"
        assert result.pr_id == "pr1"
