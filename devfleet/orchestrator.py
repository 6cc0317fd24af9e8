"""
Orchestrateur principal — DevFleet.

Workflow déclenché par une Pull Request :
  Étape 1 — Check Run `in_progress` + résolution des agents du dépôt
  Étape 2 — Exécution concurrente des agents (avec reprises)
  Étape 3 — Persistance des résultats
  Étape 4 — Review GitHub à partir des findings
  Étape 5 — Conclusion et mise à jour du Check Run
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from sqlalchemy.orm import sessionmaker

from devfleet import store
from devfleet.agents.base_agent import BaseAgent
from devfleet.agents.review_agent import ReviewAgent
from devfleet.config import Settings, get_settings
from devfleet.db import session_scope
from devfleet.errors import FatalAgentError
from devfleet.integrations.github_client import GitHubClient
from devfleet.models import (
    AgentRunResult,
    CheckConclusion,
    Finding,
    PullRequestEvent,
    RepoAgentRef,
    WorkflowReport,
)
from devfleet.report import (
    build_check_run_output,
    build_failure_output,
    collect_findings,
    decide_conclusion,
)

logger = logging.getLogger("devfleet.orchestrator")

AgentFactory = Callable[[GitHubClient], BaseAgent]


class Orchestrator:
    """
    Chef d'orchestre DevFleet.

    Pilote une PR de bout en bout : du Check Run en attente
    jusqu'à sa conclusion.
    """

    def __init__(
        self,
        github_client: GitHubClient | None = None,
        session_factory: Optional[sessionmaker] = None,
        settings: Settings | None = None,
        agent_factory: AgentFactory | None = None,
    ):
        self._settings = settings or get_settings()
        self._gh = github_client
        self._session_factory = session_factory
        self._agent_factory = agent_factory or self._build_review_agent

    # ── Lazy init des clients ───────────────

    def _get_github(self, installation_id: int) -> GitHubClient:
        if self._gh is None:
            self._gh = GitHubClient(installation_id, settings=self._settings)
        return self._gh

    def _build_review_agent(self, gh: GitHubClient) -> BaseAgent:
        return ReviewAgent(
            github_client=gh,
            session_factory=self._session_factory,
            settings=self._settings,
        )

    # ════════════════════════════════════════
    #  WORKFLOW PRINCIPAL
    # ════════════════════════════════════════

    async def handle_pull_request(
        self, event: PullRequestEvent, pull_request_id: Optional[str]
    ) -> WorkflowReport:
        """
        Exécute tous les agents activés sur la PR et conclut le Check Run.

        Args:
            event: événement pull_request normalisé
            pull_request_id: ID interne de la PR (lien des exécutions)

        Returns:
            WorkflowReport avec conclusion, résultats et findings.
        """
        logger.info(f"🚀 DevFleet — {event.full_name}#{event.pr_number} @ {event.head_sha[:7]}")

        gh = self._get_github(event.installation_id)

        # ── ÉTAPE 1 : Check Run + agents ──
        check_run = gh.create_check_run(event.owner, event.repo, event.head_sha)

        try:
            with session_scope(self._session_factory) as session:
                agents = store.get_agents_for_repository(session, event.repo_github_id)
            logger.info(f"🤖 {len(agents)} agent(s) à exécuter")

            # ── ÉTAPE 2 : Agents concurrents ──
            results = await self._run_agents(gh, event, agents, pull_request_id)

            # ── ÉTAPE 3 : Persistance ──
            if agents:
                with session_scope(self._session_factory) as session:
                    store.save_agent_results(session, results)

            # ── ÉTAPE 4 : Review GitHub ──
            findings = collect_findings(results)
            review = self._post_review(gh, event, findings)

            # ── ÉTAPE 5 : Conclusion ──
            conclusion = decide_conclusion(results, findings)
            output = build_check_run_output(
                results, findings, {ref.agent_id: ref.agent_name for ref in agents}
            )
            gh.update_check_run(event.owner, event.repo, check_run.id, conclusion, output)
        except Exception as exc:
            logger.error(f"❌ Workflow en échec pour {event.full_name}#{event.pr_number} : {exc}")
            self._fail_check_run(gh, event, check_run.id, exc)
            raise

        logger.info(f"✅ DevFleet — {event.full_name}#{event.pr_number} → {conclusion.value}")
        return WorkflowReport(
            check_run_id=check_run.id,
            conclusion=conclusion,
            results=results,
            findings=findings,
            review_posted=review.get("posted", False),
            comment_count=review.get("comment_count", 0),
        )

    # ════════════════════════════════════════
    #  ÉTAPE 2 — Agents concurrents
    # ════════════════════════════════════════

    async def _run_agents(
        self,
        gh: GitHubClient,
        event: PullRequestEvent,
        agents: list[RepoAgentRef],
        pull_request_id: Optional[str],
    ) -> list[AgentRunResult]:
        """Lance tous les agents ; un échec n'interrompt pas les autres."""
        outcomes = await asyncio.gather(
            *(self._run_with_retries(gh, event, ref, pull_request_id) for ref in agents),
            return_exceptions=True,
        )
        return [
            self._to_result(ref, outcome, pull_request_id)
            for ref, outcome in zip(agents, outcomes)
        ]

    async def _run_with_retries(
        self,
        gh: GitHubClient,
        event: PullRequestEvent,
        ref: RepoAgentRef,
        pull_request_id: Optional[str],
    ) -> AgentRunResult:
        attempts = self._settings.agent_max_attempts
        label = ref.agent_name or ref.agent_id
        for attempt in range(1, attempts + 1):
            agent = self._agent_factory(gh)
            try:
                return await agent.run(event, ref=ref, pr_id=pull_request_id)
            except FatalAgentError as exc:
                logger.error(f"[{label}] Erreur fatale : {exc}")
                raise
            except Exception as exc:
                if attempt >= attempts:
                    logger.error(f"[{label}] Échec après {attempts} tentative(s) : {exc}")
                    raise
                logger.warning(f"[{label}] Tentative {attempt}/{attempts} échouée : {exc}")
        raise RuntimeError("unreachable")

    @staticmethod
    def _to_result(
        ref: RepoAgentRef, outcome: Any, pull_request_id: Optional[str]
    ) -> AgentRunResult:
        if isinstance(outcome, AgentRunResult):
            return outcome
        return AgentRunResult(
            repo_id=ref.repo_id,
            agent_id=ref.agent_id,
            pr_id=pull_request_id,
            result=None,
            stdout=getattr(outcome, "stdout", "") or "",
            error=str(outcome) or type(outcome).__name__,
        )

    # ════════════════════════════════════════
    #  ÉTAPES 4-5 — Review & Check Run
    # ════════════════════════════════════════

    @staticmethod
    def _post_review(
        gh: GitHubClient, event: PullRequestEvent, findings: list[Finding]
    ) -> dict[str, Any]:
        try:
            return gh.post_review(
                event.owner, event.repo, event.pr_number, event.head_sha, findings
            )
        except Exception as exc:
            logger.warning(f"Review non postée sur {event.full_name}#{event.pr_number} : {exc}")
            return {"posted": False, "comment_count": 0}

    @staticmethod
    def _fail_check_run(
        gh: GitHubClient, event: PullRequestEvent, check_run_id: int, error: Exception
    ) -> None:
        try:
            gh.update_check_run(
                event.owner,
                event.repo,
                check_run_id,
                CheckConclusion.FAILURE,
                build_failure_output(error),
            )
        except Exception as exc:
            logger.error(f"Check Run {check_run_id} non mis à jour : {exc}")
