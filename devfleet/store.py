"""
Accès aux données — DevFleet.

Requêtes utilisées par le webhook, l'orchestrateur et l'API REST.
Chaque fonction reçoit une Session ; le commit est à la charge
de l'appelant (voir `db.session_scope`).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from devfleet.db import (
    Agent,
    AgentRule,
    AgentTemplate,
    Organization,
    PrCheckRun,
    PullRequest,
    RepoAgent,
    Repository,
    Rule,
)
from devfleet.errors import SafeError
from devfleet.models import (
    AgentRunResult,
    AgentRunStatus,
    PullRequestEvent,
    PullRequestState,
    RepoAgentRef,
    ReviewData,
)
from devfleet.utils.helpers import percentage

logger = logging.getLogger("devfleet.store")

DASHBOARD_WINDOW_DAYS = 30


# ════════════════════════════════════════════
#  Résolution des agents
# ════════════════════════════════════════════

def _repository_id_by_github_id(session: Session, github_repo_id: int) -> Optional[str]:
    return session.scalar(
        select(Repository.id).where(Repository.github_id == str(github_repo_id)).limit(1)
    )


def get_agents_for_repository(session: Session, github_repo_id: int) -> list[RepoAgentRef]:
    """Agents activés sur le dépôt, dans l'ordre configuré."""
    repo_id = _repository_id_by_github_id(session, github_repo_id)
    if not repo_id:
        return []

    rows = session.execute(
        select(RepoAgent.repo_id, RepoAgent.id, Agent.id, Agent.name)
        .join(Agent, RepoAgent.agent_id == Agent.id)
        .where(RepoAgent.repo_id == repo_id, RepoAgent.enabled.is_(True))
        .order_by(RepoAgent.order)
    ).all()

    return [
        RepoAgentRef(repo_id=r[0], repo_agent_id=r[1], agent_id=r[2], agent_name=r[3])
        for r in rows
    ]


def has_active_agents(session: Session, github_repo_id: int) -> bool:
    """Vérifie, avant de lancer le workflow, qu'au moins un agent est actif."""
    repo_id = _repository_id_by_github_id(session, github_repo_id)
    if not repo_id:
        return False
    row = session.execute(
        select(RepoAgent.id)
        .join(Agent, RepoAgent.agent_id == Agent.id)
        .where(RepoAgent.repo_id == repo_id, RepoAgent.enabled.is_(True))
        .limit(1)
    ).first()
    return row is not None


def get_repository_full_name(session: Session, repo_id: str) -> str:
    full_name = session.scalar(select(Repository.full_name).where(Repository.id == repo_id))
    if not full_name:
        raise LookupError(f"Dépôt introuvable : {repo_id}")
    return full_name


def get_agent_prompt(session: Session, agent_id: str) -> str:
    """Prompt de l'agent, ou à défaut le prompt de base de son template."""
    row = session.execute(
        select(Agent.prompt, AgentTemplate.base_prompt)
        .outerjoin(AgentTemplate, Agent.agent_template_id == AgentTemplate.id)
        .where(Agent.id == agent_id)
        .limit(1)
    ).first()
    if row is None:
        return ""
    prompt, base_prompt = row
    if prompt is not None:
        return prompt
    return base_prompt or ""


def get_enabled_rule_instructions(session: Session, agent_id: str) -> list[str]:
    return list(
        session.scalars(
            select(Rule.instructions)
            .join(AgentRule, AgentRule.rule_id == Rule.id)
            .where(AgentRule.agent_id == agent_id, AgentRule.enabled.is_(True))
            .order_by(AgentRule.created_at)
        )
    )


# ════════════════════════════════════════════
#  Pull Requests
# ════════════════════════════════════════════

def map_pull_request_state(state: str, draft: bool, merged: bool) -> PullRequestState:
    if merged:
        return PullRequestState.MERGED
    if draft:
        return PullRequestState.DRAFT
    if state == "closed":
        return PullRequestState.CLOSED
    return PullRequestState.OPEN


def upsert_pull_request(session: Session, event: PullRequestEvent) -> Optional[str]:
    """Insère ou met à jour la PR ; None si le dépôt n'est pas connu."""
    repo_id = _repository_id_by_github_id(session, event.repo_github_id)
    if not repo_id:
        logger.warning(f"Dépôt GitHub {event.repo_github_id} inconnu — PR ignorée.")
        return None

    values = {
        "title": event.title,
        "description": event.body,
        "author_login": event.author_login,
        "state": map_pull_request_state(event.state, event.draft, event.merged).value,
        "draft": event.draft,
        "base_sha": event.base_sha,
        "head_sha": event.head_sha,
        "html_url": event.html_url,
        "labels": event.labels,
        "assignees": event.assignees,
        "requested_reviewers": event.requested_reviewers,
        "merged_at": event.merged_at,
        "closed_at": event.closed_at,
        "merged_by": event.merged_by,
    }

    pr = session.scalar(
        select(PullRequest).where(
            PullRequest.repo_id == repo_id, PullRequest.pr_number == event.pr_number
        )
    )
    if pr is None:
        pr = PullRequest(repo_id=repo_id, pr_number=event.pr_number, **values)
        session.add(pr)
    else:
        for key, value in values.items():
            setattr(pr, key, value)
    session.flush()
    return pr.id


def update_pull_request_reviews(session: Session, pr_id: str, data: ReviewData) -> None:
    pr = session.get(PullRequest, pr_id)
    if pr is None:
        raise LookupError(f"PR introuvable : {pr_id}")
    pr.approval_status = data.approval_status.value if data.approval_status else None
    pr.review_count = data.review_count
    pr.first_review_at = data.first_review_at


# ════════════════════════════════════════════
#  Résultats d'agents
# ════════════════════════════════════════════

def save_agent_results(session: Session, results: list[AgentRunResult]) -> list[PrCheckRun]:
    """Une ligne pr_check_runs par agent exécuté."""
    rows: list[PrCheckRun] = []
    for r in results:
        res = r.result
        rows.append(PrCheckRun(
            repo_id=r.repo_id,
            pr_id=r.pr_id,
            agent_id=r.agent_id,
            status=(AgentRunStatus.PASS if r.succeeded else AgentRunStatus.ERROR).value,
            agent_stdout=r.stdout,
            runtime_ms=res.duration_ms if res else 0,
            cost_usd=res.total_cost_usd if res else None,
            tokens_in=res.usage.input_tokens if res else None,
            tokens_out=res.usage.output_tokens if res else None,
            raw_output=res.model_dump(mode="json") if res else None,
            error=r.error,
        ))
    session.add_all(rows)
    session.flush()
    return rows


# ════════════════════════════════════════════
#  Dépôts & installations
# ════════════════════════════════════════════

_REPOSITORY_FIELDS = (
    "name", "full_name", "description", "private", "html_url", "clone_url",
    "default_branch", "language", "visibility", "archived", "disabled",
)


def upsert_repository(session: Session, org_id: str, data: dict[str, Any]) -> str:
    """Insère ou met à jour un dépôt à partir des données GitHub."""
    values = {key: data[key] for key in _REPOSITORY_FIELDS if data.get(key) is not None}
    repo = session.scalar(select(Repository).where(Repository.github_id == str(data["id"])))
    if repo is None:
        repo = Repository(github_id=str(data["id"]), owner_org_id=org_id, **values)
        session.add(repo)
    else:
        repo.owner_org_id = org_id
        for key, value in values.items():
            setattr(repo, key, value)
    session.flush()
    return repo.id


def get_organization_by_installation(session: Session, installation_id: str) -> Optional[Organization]:
    return session.scalar(
        select(Organization).where(Organization.installation_id == str(installation_id)).limit(1)
    )


def sync_installation_repositories(
    session: Session, installation_id: str, repositories: list[dict[str, Any]]
) -> int:
    """Enregistre les dépôts accordés à une installation ; retourne le nombre traité."""
    if not repositories:
        return 0
    org = get_organization_by_installation(session, installation_id)
    if org is None:
        logger.warning(f"Aucune organisation pour l'installation {installation_id}")
        return 0
    for repo in repositories:
        upsert_repository(session, org.id, repo)
    logger.info(f"{len(repositories)} dépôt(s) synchronisé(s) pour l'org {org.id}")
    return len(repositories)


def handle_installation_removal(session: Session, installation_id: str, reason: str) -> bool:
    """Déconnecte l'organisation et désactive ses agents (même transaction)."""
    org = get_organization_by_installation(session, installation_id)
    if org is None:
        logger.warning(f"Aucune organisation pour l'installation {installation_id}")
        return False

    org.connection_status = "disconnected"
    org.disconnected_at = datetime.now(UTC)
    org.disconnected_reason = reason

    repo_agents = session.scalars(
        select(RepoAgent).where(RepoAgent.owner_org_id == org.id, RepoAgent.enabled.is_(True))
    )
    for ra in repo_agents:
        ra.enabled = False
        ra.disabled_due_to_github_disconnect = True

    logger.info(f"Installation {installation_id} retirée ({reason}) — org {org.id}")
    return True


def handle_installation_reconnection(
    session: Session, installation_id: str, github_account_id: str | None = None
) -> bool:
    """Reconnecte l'organisation et réactive seulement les agents coupés par la déconnexion.

    Une nouvelle installation porte un nouvel ID : on retrouve alors
    l'organisation par son compte GitHub.
    """
    org = get_organization_by_installation(session, installation_id)
    if org is None and github_account_id:
        org = session.scalar(
            select(Organization).where(Organization.github_account_id == str(github_account_id))
        )
    if org is None:
        logger.warning(f"Aucune organisation pour l'installation {installation_id}")
        return False

    org.installation_id = str(installation_id)
    org.connection_status = "connected"
    org.disconnected_at = None
    org.disconnected_reason = None

    repo_agents = session.scalars(
        select(RepoAgent).where(
            RepoAgent.owner_org_id == org.id,
            RepoAgent.disabled_due_to_github_disconnect.is_(True),
        )
    )
    for ra in repo_agents:
        ra.enabled = True
        ra.disabled_due_to_github_disconnect = False
    session.flush()

    logger.info(f"Installation {installation_id} reconnectée — org {org.id}")
    return True


# ════════════════════════════════════════════
#  Organisations
# ════════════════════════════════════════════

def get_organization(session: Session, org_id: str) -> Organization:
    org = session.get(Organization, org_id)
    if org is None:
        raise SafeError("Organization not found", status_code=404)
    return org


def list_repositories(session: Session, org_id: str) -> list[Repository]:
    get_organization(session, org_id)
    return list(session.scalars(
        select(Repository).where(Repository.owner_org_id == org_id).order_by(Repository.full_name)
    ))


# ════════════════════════════════════════════
#  Agents (CRUD)
# ════════════════════════════════════════════

def _get_org_agent(session: Session, org_id: str, agent_id: str) -> Agent:
    agent = session.scalar(
        select(Agent).where(Agent.id == agent_id, Agent.owner_org_id == org_id)
    )
    if agent is None:
        raise SafeError("Agent not found", status_code=404)
    return agent


def list_agents(session: Session, org_id: str) -> list[Agent]:
    return list(session.scalars(
        select(Agent).where(Agent.owner_org_id == org_id).order_by(Agent.created_at)
    ))


def create_agent(session: Session, org_id: str, **fields: Any) -> Agent:
    if session.get(Organization, org_id) is None:
        raise SafeError("Organization not found", status_code=404)
    template_id = fields.get("agent_template_id")
    if template_id and session.get(AgentTemplate, template_id) is None:
        raise SafeError("Agent template not found")
    agent = Agent(owner_org_id=org_id, **fields)
    session.add(agent)
    session.flush()
    return agent


def get_agent(session: Session, org_id: str, agent_id: str) -> Agent:
    return _get_org_agent(session, org_id, agent_id)


_REQUIRED_AGENT_FIELDS = ("name", "engine")


def update_agent(session: Session, org_id: str, agent_id: str, **fields: Any) -> Agent:
    for key in _REQUIRED_AGENT_FIELDS:
        if key in fields and fields[key] is None:
            raise SafeError(f"Field '{key}' cannot be null")
    agent = _get_org_agent(session, org_id, agent_id)
    for key, value in fields.items():
        setattr(agent, key, value)
    session.flush()
    return agent


def delete_agent(session: Session, org_id: str, agent_id: str) -> None:
    agent = _get_org_agent(session, org_id, agent_id)
    for ra in session.scalars(select(RepoAgent).where(RepoAgent.agent_id == agent.id)):
        session.delete(ra)
    for ar in session.scalars(select(AgentRule).where(AgentRule.agent_id == agent.id)):
        session.delete(ar)
    session.delete(agent)
    session.flush()


# ════════════════════════════════════════════
#  Agents d'un dépôt
# ════════════════════════════════════════════

def _get_org_repository(session: Session, org_id: str, repo_id: str) -> Repository:
    repo = session.scalar(
        select(Repository).where(Repository.id == repo_id, Repository.owner_org_id == org_id)
    )
    if repo is None:
        raise SafeError("Repository not found", status_code=404)
    return repo


def list_repository_agents(session: Session, org_id: str, repo_id: str) -> list[dict[str, Any]]:
    _get_org_repository(session, org_id, repo_id)
    rows = session.execute(
        select(RepoAgent, Agent)
        .join(Agent, RepoAgent.agent_id == Agent.id)
        .where(RepoAgent.repo_id == repo_id, RepoAgent.owner_org_id == org_id)
        .order_by(RepoAgent.order)
    ).all()
    return [
        {
            "repo_agent_id": ra.id,
            "agent_id": agent.id,
            "agent_name": agent.name,
            "agent_description": agent.description,
            "agent_engine": agent.engine,
            "enabled": ra.enabled,
            "order": ra.order,
        }
        for ra, agent in rows
    ]


def attach_agent_to_repository(session: Session, org_id: str, repo_id: str, agent_id: str) -> RepoAgent:
    _get_org_repository(session, org_id, repo_id)
    _get_org_agent(session, org_id, agent_id)
    existing = session.scalar(
        select(RepoAgent).where(RepoAgent.repo_id == repo_id, RepoAgent.agent_id == agent_id)
    )
    if existing is not None:
        raise SafeError("Agent already attached to this repository", status_code=409)

    last = session.scalar(
        select(RepoAgent.order).where(RepoAgent.repo_id == repo_id).order_by(RepoAgent.order.desc())
    )
    repo_agent = RepoAgent(
        repo_id=repo_id,
        agent_id=agent_id,
        owner_org_id=org_id,
        order=(last + 1) if last is not None else 0,
    )
    session.add(repo_agent)
    session.flush()
    return repo_agent


def set_repository_agent_enabled(
    session: Session, org_id: str, repo_id: str, repo_agent_id: str, enabled: bool
) -> RepoAgent:
    repo_agent = session.scalar(
        select(RepoAgent).where(
            RepoAgent.id == repo_agent_id,
            RepoAgent.repo_id == repo_id,
            RepoAgent.owner_org_id == org_id,
        )
    )
    if repo_agent is None:
        raise SafeError("Repository agent not found", status_code=404)
    repo_agent.enabled = enabled
    repo_agent.disabled_due_to_github_disconnect = False
    session.flush()
    return repo_agent


# ════════════════════════════════════════════
#  Dashboard
# ════════════════════════════════════════════

def get_dashboard_stats(session: Session, org_id: str, now: datetime | None = None) -> dict[str, Any]:
    """Statistiques des exécutions d'agents sur les 30 derniers jours."""
    now = now or datetime.now(UTC)
    since = now - timedelta(days=DASHBOARD_WINDOW_DAYS)

    runs = session.execute(
        select(PrCheckRun.status, PrCheckRun.cost_usd, PrCheckRun.tokens_in,
               PrCheckRun.tokens_out, PrCheckRun.created_at)
        .join(Repository, PrCheckRun.repo_id == Repository.id)
        .where(Repository.owner_org_id == org_id, PrCheckRun.created_at >= since)
        .order_by(PrCheckRun.created_at.desc())
    ).all()

    total_runs = len(runs)
    successful = sum(1 for r in runs if r.status == AgentRunStatus.PASS.value)
    total_cost = sum(r.cost_usd or 0.0 for r in runs)
    total_tokens = sum((r.tokens_in or 0) + (r.tokens_out or 0) for r in runs)

    # Une entrée par jour, même sans exécution
    chart: dict[str, dict[str, Any]] = {}
    for i in range(DASHBOARD_WINDOW_DAYS):
        day = (now - timedelta(days=i)).strftime("%Y-%m-%d")
        chart[day] = {"date": day, "runs": 0, "cost": 0.0}

    for r in runs:
        day = r.created_at.strftime("%Y-%m-%d")
        if day in chart:
            chart[day]["runs"] += 1
            chart[day]["cost"] += r.cost_usd or 0.0

    return {
        "total_runs": total_runs,
        "success_rate": percentage(successful, total_runs),
        "total_cost": total_cost,
        "total_tokens": total_tokens,
        "chart_data": sorted(chart.values(), key=lambda e: e["date"]),
    }
