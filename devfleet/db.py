"""
Base de données — DevFleet.

Tables SQLAlchemy (organisations, dépôts, agents, règles, PR, exécutions)
et fabrique de sessions. Les migrations ne sont pas gérées ici :
`init_db()` crée simplement les tables manquantes.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Iterator

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from devfleet.config import get_settings

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


# ════════════════════════════════════════════
#  Tables
# ════════════════════════════════════════════

class Organization(TimestampMixin, Base):
    """Compte GitHub (utilisateur ou organisation) ayant installé l'App."""
    __tablename__ = "gh_organizations"

    id = Column(String(32), primary_key=True, default=_new_id)
    github_account_id = Column(String, nullable=False, unique=True)
    account_type = Column(String, nullable=False, default="ORG")  # USER / ORG
    login = Column(String, nullable=False, index=True)
    installation_id = Column(String, nullable=True, index=True)
    connection_status = Column(String, nullable=False, default="connected")
    disconnected_at = Column(DateTime(timezone=True), nullable=True)
    disconnected_reason = Column(String, nullable=True)


class Repository(TimestampMixin, Base):
    __tablename__ = "repositories"

    id = Column(String(32), primary_key=True, default=_new_id)
    owner_org_id = Column(String(32), ForeignKey("gh_organizations.id"), nullable=False, index=True)
    github_id = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    full_name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    private = Column(Boolean, nullable=False, default=False)
    html_url = Column(String, nullable=False, default="")
    clone_url = Column(String, nullable=False, default="")
    default_branch = Column(String, nullable=False, default="main")
    language = Column(String, nullable=True)
    visibility = Column(String, nullable=False, default="private")
    archived = Column(Boolean, nullable=False, default=False)
    disabled = Column(Boolean, nullable=False, default=False)


class AgentTemplate(TimestampMixin, Base):
    __tablename__ = "agent_templates"

    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    base_prompt = Column(Text, nullable=False, default="")


class Agent(TimestampMixin, Base):
    __tablename__ = "agents"

    id = Column(String(32), primary_key=True, default=_new_id)
    owner_org_id = Column(String(32), ForeignKey("gh_organizations.id"), nullable=False, index=True)
    agent_template_id = Column(String(32), ForeignKey("agent_templates.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    prompt = Column(Text, nullable=True)  # NULL → prompt du template
    engine = Column(String, nullable=False, default="claude")


class Rule(TimestampMixin, Base):
    __tablename__ = "rules"

    id = Column(String(32), primary_key=True, default=_new_id)
    owner_org_id = Column(String(32), ForeignKey("gh_organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    instructions = Column(Text, nullable=False)


class AgentRule(TimestampMixin, Base):
    __tablename__ = "agent_rules"
    __table_args__ = (UniqueConstraint("agent_id", "rule_id", name="agent_rules_agent_rule_uq"),)

    id = Column(String(32), primary_key=True, default=_new_id)
    agent_id = Column(String(32), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_id = Column(String(32), ForeignKey("rules.id", ondelete="CASCADE"), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)


class RepoAgent(TimestampMixin, Base):
    """Activation d'un agent sur un dépôt."""
    __tablename__ = "repo_agents"
    __table_args__ = (UniqueConstraint("repo_id", "agent_id", name="repo_agents_repo_agent_uq"),)

    id = Column(String(32), primary_key=True, default=_new_id)
    repo_id = Column(String(32), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id = Column(String(32), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    owner_org_id = Column(String(32), ForeignKey("gh_organizations.id"), nullable=False, index=True)
    enabled = Column(Boolean, nullable=False, default=True)
    order = Column(Integer, nullable=False, default=0)
    disabled_due_to_github_disconnect = Column(Boolean, nullable=False, default=False)


class PullRequest(TimestampMixin, Base):
    __tablename__ = "pull_requests"
    __table_args__ = (UniqueConstraint("repo_id", "pr_number", name="pull_requests_repo_number_uq"),)

    id = Column(String(32), primary_key=True, default=_new_id)
    repo_id = Column(String(32), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    pr_number = Column(Integer, nullable=False)
    title = Column(String, nullable=False, default="")
    description = Column(Text, nullable=True)
    author_login = Column(String, nullable=False, default="unknown")
    state = Column(String, nullable=False, default="open")
    draft = Column(Boolean, nullable=False, default=False)
    base_sha = Column(String, nullable=False, default="")
    head_sha = Column(String, nullable=False, default="")
    html_url = Column(String, nullable=False, default="")
    labels = Column(JSON, nullable=False, default=list)
    assignees = Column(JSON, nullable=False, default=list)
    requested_reviewers = Column(JSON, nullable=False, default=list)
    merged_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    merged_by = Column(String, nullable=True)
    approval_status = Column(String, nullable=True)
    review_count = Column(Integer, nullable=False, default=0)
    first_review_at = Column(DateTime(timezone=True), nullable=True)


class PrCheckRun(Base):
    """Une exécution d'agent sur une PR."""
    __tablename__ = "pr_check_runs"

    id = Column(String(32), primary_key=True, default=_new_id)
    repo_id = Column(String(32), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True)
    pr_id = Column(String(32), ForeignKey("pull_requests.id", ondelete="SET NULL"), nullable=True)
    agent_id = Column(String(32), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    status = Column(String, nullable=False)  # pass / error
    agent_stdout = Column(Text, nullable=False, default="")
    runtime_ms = Column(Integer, nullable=False, default=0)
    cost_usd = Column(Float, nullable=True)
    tokens_in = Column(Integer, nullable=True)
    tokens_out = Column(Integer, nullable=True)
    raw_output = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)


# ════════════════════════════════════════════
#  Engine & sessions
# ════════════════════════════════════════════

_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def create_db_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, future=True)


def get_session_factory() -> sessionmaker:
    """Fabrique de sessions partagée, créée à la première demande."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_db_engine(get_settings().database_url)
        _session_factory = sessionmaker(bind=_engine, autocommit=False, autoflush=False)
    return _session_factory


def init_db(engine: Engine | None = None) -> None:
    """Crée les tables manquantes."""
    if engine is None:
        get_session_factory()
        engine = _engine
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Iterator[Session]:
    """Session transactionnelle : commit en sortie, rollback sur exception."""
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
