"""
API REST — DevFleet.

Routes JSON pour la gestion des agents, des agents d'un dépôt et des
statistiques du tableau de bord. Chaque route est rattachée à une
organisation ; l'authentification est assurée en amont.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from devfleet import store
from devfleet.db import Agent, session_scope
from devfleet.errors import SafeError

logger = logging.getLogger("devfleet.api")

router = APIRouter(prefix="/api/organizations/{org_id}")


def get_session(request: Request) -> Iterator[Session]:
    """Dépendance FastAPI : session issue de la fabrique passée à create_app()."""
    factory = getattr(request.app.state, "session_factory", None)
    with session_scope(factory) as session:
        yield session


# ════════════════════════════════════════════
#  Corps de requête
# ════════════════════════════════════════════

class AgentCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    prompt: Optional[str] = None
    agent_template_id: Optional[str] = None
    engine: str = "claude"


class AgentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    prompt: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_null(cls, value: Optional[str]) -> str:
        # Champ omis → inchangé ; null explicite → refusé
        if value is None:
            raise ValueError("name cannot be null")
        return value


class RepositoryAgentAttach(BaseModel):
    agent_id: str


class RepositoryAgentToggle(BaseModel):
    enabled: bool


def _agent_to_dict(agent: Agent) -> dict[str, Any]:
    return {
        "id": agent.id,
        "name": agent.name,
        "description": agent.description,
        "prompt": agent.prompt,
        "engine": agent.engine,
        "agent_template_id": agent.agent_template_id,
        "created_at": agent.created_at.isoformat() if agent.created_at else None,
    }


# ════════════════════════════════════════════
#  Organisation & dépôts
# ════════════════════════════════════════════

@router.get("")
def get_organization(org_id: str, session: Session = Depends(get_session)):
    org = store.get_organization(session, org_id)
    return {
        "organization": {
            "id": org.id,
            "login": org.login,
            "account_type": org.account_type,
            "connection_status": org.connection_status,
            "disconnected_at": org.disconnected_at.isoformat() if org.disconnected_at else None,
            "disconnected_reason": org.disconnected_reason,
        }
    }


@router.get("/repositories")
def list_repositories(org_id: str, session: Session = Depends(get_session)):
    return {
        "repositories": [
            {
                "id": r.id,
                "github_id": r.github_id,
                "name": r.name,
                "full_name": r.full_name,
                "private": r.private,
                "default_branch": r.default_branch,
                "language": r.language,
            }
            for r in store.list_repositories(session, org_id)
        ]
    }


# ════════════════════════════════════════════
#  Agents
# ════════════════════════════════════════════

@router.get("/agents")
def list_agents(org_id: str, session: Session = Depends(get_session)):
    return {"agents": [_agent_to_dict(a) for a in store.list_agents(session, org_id)]}


@router.post("/agents", status_code=201)
def create_agent(org_id: str, body: AgentCreate, session: Session = Depends(get_session)):
    agent = store.create_agent(session, org_id, **body.model_dump())
    return {"agent": _agent_to_dict(agent)}


@router.get("/agents/{agent_id}")
def get_agent(org_id: str, agent_id: str, session: Session = Depends(get_session)):
    return {"agent": _agent_to_dict(store.get_agent(session, org_id, agent_id))}


@router.patch("/agents/{agent_id}")
def update_agent(
    org_id: str, agent_id: str, body: AgentUpdate, session: Session = Depends(get_session)
):
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise SafeError("Nothing to update")
    agent = store.update_agent(session, org_id, agent_id, **fields)
    return {"agent": _agent_to_dict(agent)}


@router.delete("/agents/{agent_id}")
def delete_agent(org_id: str, agent_id: str, session: Session = Depends(get_session)):
    store.delete_agent(session, org_id, agent_id)
    return {"success": True}


# ════════════════════════════════════════════
#  Agents d'un dépôt
# ════════════════════════════════════════════

@router.get("/repositories/{repo_id}/agents")
def list_repository_agents(org_id: str, repo_id: str, session: Session = Depends(get_session)):
    return {"agents": store.list_repository_agents(session, org_id, repo_id)}


@router.post("/repositories/{repo_id}/agents", status_code=201)
def attach_repository_agent(
    org_id: str,
    repo_id: str,
    body: RepositoryAgentAttach,
    session: Session = Depends(get_session),
):
    repo_agent = store.attach_agent_to_repository(session, org_id, repo_id, body.agent_id)
    return {
        "repo_agent_id": repo_agent.id,
        "agent_id": repo_agent.agent_id,
        "enabled": repo_agent.enabled,
        "order": repo_agent.order,
    }


@router.patch("/repositories/{repo_id}/agents/{repo_agent_id}")
def toggle_repository_agent(
    org_id: str,
    repo_id: str,
    repo_agent_id: str,
    body: RepositoryAgentToggle,
    session: Session = Depends(get_session),
):
    repo_agent = store.set_repository_agent_enabled(
        session, org_id, repo_id, repo_agent_id, body.enabled
    )
    return {"repo_agent_id": repo_agent.id, "enabled": repo_agent.enabled}


# ════════════════════════════════════════════
#  Tableau de bord
# ════════════════════════════════════════════

@router.get("/dashboard/stats")
def dashboard_stats(org_id: str, session: Session = Depends(get_session)):
    return store.get_dashboard_stats(session, org_id)


# ════════════════════════════════════════════
#  Gestion des erreurs
# ════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Erreurs connues → message exposable ; le reste → 500 générique."""

    @app.exception_handler(SafeError)
    async def safe_error_handler(request: Request, exc: SafeError):
        return JSONResponse(
            {"error": exc.safe_message, "isKnownError": True},
            status_code=exc.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        issues = [
            {"path": [str(p) for p in err.get("loc", ())], "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            {"error": {"issues": issues}, "isKnownError": True},
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Erreur inattendue sur {request.method} {request.url.path} : {exc}", exc_info=exc)
        return JSONResponse({"error": "An unexpected error occurred"}, status_code=500)
