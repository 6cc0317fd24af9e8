"""
Modèles de données — DevFleet.

Tous les objets échangés entre le webhook, l'orchestrateur, les agents
et le stockage sont définis ici pour garantir typage et sérialisation
cohérents.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ════════════════════════════════════════════
#  Enums
# ════════════════════════════════════════════

class CheckConclusion(str, Enum):
    ACTION_REQUIRED = "action_required"
    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    STALE = "stale"


class AgentRunStatus(str, Enum):
    PASS = "pass"
    ERROR = "error"


class FindingSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PullRequestState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"
    DRAFT = "draft"


class ApprovalStatus(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    PENDING = "pending"


BLOCKING_SEVERITIES = (FindingSeverity.HIGH, FindingSeverity.CRITICAL)


# ════════════════════════════════════════════
#  Événement Pull Request (entrée)
# ════════════════════════════════════════════

class PullRequestEvent(BaseModel):
    """Sous-ensemble d'un webhook `pull_request` utile au workflow."""
    action: str = ""
    installation_id: int = Field(..., description="ID d'installation de la GitHub App")
    owner: str = Field(..., description="Login du propriétaire du dépôt")
    repo: str = Field(..., description="Nom court du dépôt")
    repo_github_id: int
    pr_number: int
    head_sha: str
    base_sha: str = ""
    title: str = ""
    body: Optional[str] = None
    author_login: str = "unknown"
    state: str = "open"
    draft: bool = False
    merged: bool = False
    html_url: str = ""
    labels: list[dict[str, Any]] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)
    requested_reviewers: list[str] = Field(default_factory=list)
    merged_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    merged_by: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PullRequestEvent":
        """Construit l'événement depuis le payload brut du webhook GitHub."""
        pr = payload.get("pull_request") or {}
        repository = payload.get("repository") or {}
        installation = payload.get("installation") or {}
        if not installation.get("id"):
            raise ValueError("Payload sans installation GitHub App.")

        labels = [
            {
                "id": label.get("id"),
                "name": label.get("name"),
                "color": label.get("color"),
                "description": label.get("description"),
            }
            for label in pr.get("labels") or []
        ]
        # GitHub peut renvoyer des entrées nulles dans ces listes
        assignees = [a["login"] for a in pr.get("assignees") or [] if a and a.get("login")]
        reviewers = [
            r["login"] for r in pr.get("requested_reviewers") or [] if r and r.get("login")
        ]

        return cls(
            action=payload.get("action", ""),
            installation_id=installation["id"],
            owner=(repository.get("owner") or {}).get("login", ""),
            repo=repository.get("name", ""),
            repo_github_id=repository.get("id", 0),
            pr_number=pr.get("number", 0),
            head_sha=(pr.get("head") or {}).get("sha", ""),
            base_sha=(pr.get("base") or {}).get("sha", ""),
            title=pr.get("title") or "",
            body=pr.get("body"),
            author_login=(pr.get("user") or {}).get("login") or "unknown",
            state=pr.get("state") or "open",
            draft=bool(pr.get("draft")),
            merged=bool(pr.get("merged")),
            html_url=pr.get("html_url") or "",
            labels=labels,
            assignees=assignees,
            requested_reviewers=reviewers,
            merged_at=pr.get("merged_at"),
            closed_at=pr.get("closed_at"),
            merged_by=(pr.get("merged_by") or {}).get("login"),
        )


class RepoAgentRef(BaseModel):
    """Agent activé sur un dépôt, résolu avant l'exécution."""
    repo_id: str
    repo_agent_id: str
    agent_id: str
    agent_name: str = ""


# ════════════════════════════════════════════
#  Sortie structurée des agents
# ════════════════════════════════════════════

class Finding(BaseModel):
    file: str
    line: int = Field(..., ge=1)
    severity: FindingSeverity
    description: str
    recommendation: str
    confidence: float = Field(..., ge=0, le=1)


class AnalysisSummary(BaseModel):
    files_reviewed: int = Field(default=0, ge=0)
    critical_severity: int = Field(default=0, ge=0)
    high_severity: int = Field(default=0, ge=0)
    medium_severity: int = Field(default=0, ge=0)
    low_severity: int = Field(default=0, ge=0)
    review_completed: bool = False


class AgentStructuredOutput(BaseModel):
    findings: list[Finding] = Field(default_factory=list)
    analysis_summary: Optional[AnalysisSummary] = None


# ════════════════════════════════════════════
#  Résultat du CLI Claude
# ════════════════════════════════════════════

class ClaudeUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None

    model_config = {"extra": "allow"}


class ClaudeResult(BaseModel):
    """Élément `type == "result"` de la sortie JSON du CLI."""
    type: str = "result"
    subtype: str = ""
    is_error: bool = False
    duration_ms: int = 0
    duration_api_ms: int = 0
    num_turns: int = 0
    result: str = ""
    session_id: str = ""
    total_cost_usd: float = 0.0
    usage: ClaudeUsage = Field(default_factory=ClaudeUsage)
    structured_output: Optional[dict[str, Any]] = None

    model_config = {"extra": "allow"}


class AgentRunResult(BaseModel):
    """Issue d'un agent pour une PR, succès ou échec."""
    repo_id: str
    agent_id: str
    pr_id: Optional[str] = None
    result: Optional[ClaudeResult] = None
    stdout: str = ""
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None and not self.result.is_error


# ════════════════════════════════════════════
#  Check Run & rapport
# ════════════════════════════════════════════

class CheckRunOutput(BaseModel):
    title: str
    summary: str
    text: Optional[str] = None


class ReviewData(BaseModel):
    approval_status: Optional[ApprovalStatus] = None
    review_count: int = 0
    first_review_at: Optional[datetime] = None


class WorkflowReport(BaseModel):
    """Résultat consolidé d'un passage de l'orchestrateur."""
    check_run_id: int
    conclusion: CheckConclusion
    results: list[AgentRunResult] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)
    review_posted: bool = False
    comment_count: int = 0
