"""
Webhook Server — DevFleet.

Reçoit les webhooks de la GitHub App, tient à jour les PR et les
installations, et déclenche l'orchestration des agents sur les PR.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from devfleet import __version__, store
from devfleet.api import register_error_handlers, router
from devfleet.config import Settings, get_settings
from devfleet.db import session_scope
from devfleet.errors import SafeError
from devfleet.integrations.github_client import GitHubClient, verify_webhook_signature
from devfleet.models import PullRequestEvent
from devfleet.orchestrator import Orchestrator

logger = logging.getLogger("devfleet.webhook")

TRIGGER_ACTIONS = ("opened", "synchronize", "reopened")
# Action GitHub → motif de déconnexion enregistré
REMOVAL_REASONS = {"deleted": "deleted", "suspend": "suspended"}
RECONNECTION_ACTIONS = ("unsuspend", "created")

GitHubClientFactory = Callable[[int], GitHubClient]


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    github_client_factory: Optional[GitHubClientFactory] = None,
) -> FastAPI:
    """Crée et configure l'application FastAPI."""
    settings = settings or get_settings()
    if github_client_factory is None:
        def github_client_factory(installation_id: int) -> GitHubClient:
            return GitHubClient(installation_id, settings=settings)

    app = FastAPI(
        title="DevFleet",
        description="GitHub App backend running review agents on pull requests",
        version=__version__,
    )
    if not settings.webhook_secret_configured:
        logger.warning("GITHUB_APP_WEBHOOK_SECRET absent : tous les webhooks seront refusés.")

    app.state.background_tasks = set()
    app.state.session_factory = session_factory
    register_error_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "devfleet"}

    @app.post("/webhook/github")
    async def github_webhook(request: Request):
        """Endpoint pour les webhooks de la GitHub App."""
        signature = request.headers.get("X-Hub-Signature-256")
        event_name = request.headers.get("X-GitHub-Event")
        delivery_id = request.headers.get("X-GitHub-Delivery")
        if not signature or not event_name or not delivery_id:
            raise SafeError("Invalid signature, name, or id", status_code=400)

        body = await request.body()
        if not verify_webhook_signature(settings.github_app_webhook_secret, body, signature):
            logger.warning(f"Signature invalide (livraison {delivery_id})")
            raise SafeError("Invalid signature", status_code=401)

        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            raise SafeError("Invalid JSON payload")
        if not isinstance(payload, dict):
            raise SafeError("Invalid JSON payload")

        action = payload.get("action", "")
        logger.info(f"Webhook reçu : {event_name}.{action} ({delivery_id})")

        if event_name == "pull_request":
            return await _handle_pull_request(payload)
        if event_name == "installation":
            return _handle_installation(payload)
        if event_name == "installation_repositories":
            return _handle_installation_repositories(payload)

        return JSONResponse({"message": f"Événement ignoré : {event_name}"})

    # ── pull_request ────────────────────────

    async def _handle_pull_request(payload: dict[str, Any]) -> JSONResponse:
        try:
            event = PullRequestEvent.from_payload(payload)
        except ValueError as exc:
            raise SafeError(f"Invalid pull_request payload: {exc}")

        with session_scope(session_factory) as session:
            pr_id = store.upsert_pull_request(session, event)

        if pr_id is None:
            return JSONResponse({"message": f"Dépôt non suivi : {event.full_name}"})

        if event.action not in TRIGGER_ACTIONS:
            return JSONResponse({"message": "Pull request enregistrée.", "pull_request_id": pr_id})

        gh = github_client_factory(event.installation_id)
        review_data = gh.fetch_pull_request_reviews(event.owner, event.repo, event.pr_number)
        with session_scope(session_factory) as session:
            store.update_pull_request_reviews(session, pr_id, review_data)
            active = store.has_active_agents(session, event.repo_github_id)

        if not active:
            logger.info(f"Aucun agent actif sur {event.full_name} — workflow non lancé")
            return JSONResponse({"message": "Aucun agent actif.", "pull_request_id": pr_id})

        orchestrator = Orchestrator(
            github_client=gh, session_factory=session_factory, settings=settings
        )
        task = asyncio.create_task(_run_workflow_bg(orchestrator, event, pr_id))
        app.state.background_tasks.add(task)
        task.add_done_callback(app.state.background_tasks.discard)

        return JSONResponse({
            "message": "Workflow déclenché.",
            "repo": event.full_name,
            "pr": event.pr_number,
            "pull_request_id": pr_id,
        })

    # ── installation ────────────────────────

    def _handle_installation(payload: dict[str, Any]) -> JSONResponse:
        action = payload.get("action", "")
        installation = payload.get("installation") or {}
        installation_id = installation.get("id")
        if not installation_id:
            raise SafeError("Missing installation id")

        stored = 0
        with session_scope(session_factory) as session:
            if action in REMOVAL_REASONS:
                handled = store.handle_installation_removal(
                    session, str(installation_id), REMOVAL_REASONS[action]
                )
            elif action in RECONNECTION_ACTIONS:
                account_id = (installation.get("account") or {}).get("id")
                handled = store.handle_installation_reconnection(
                    session, str(installation_id), str(account_id) if account_id else None
                )
                if handled:
                    # Les dépôts accordés à l'installation sont fournis dans le payload
                    stored = store.sync_installation_repositories(
                        session, str(installation_id), payload.get("repositories") or []
                    )
            else:
                logger.info(f"Action installation ignorée : {action}")
                handled = False

        return JSONResponse({"message": f"installation.{action}", "handled": handled, "stored": stored})

    def _handle_installation_repositories(payload: dict[str, Any]) -> JSONResponse:
        action = payload.get("action", "")
        installation_id = (payload.get("installation") or {}).get("id")
        added = payload.get("repositories_added") or []
        removed = payload.get("repositories_removed") or []
        logger.info(
            f"Installation {installation_id} : {len(added)} dépôt(s) ajouté(s), "
            f"{len(removed)} retiré(s)"
        )

        stored = 0
        if action == "added" and installation_id:
            with session_scope(session_factory) as session:
                stored = store.sync_installation_repositories(session, str(installation_id), added)

        return JSONResponse({"message": f"installation_repositories.{action}", "stored": stored})

    return app


async def _run_workflow_bg(orchestrator: Orchestrator, event: PullRequestEvent, pr_id: str) -> None:
    """Exécute l'orchestration en tâche de fond."""
    try:
        report = await orchestrator.handle_pull_request(event, pr_id)
        logger.info(
            f"Workflow terminé : {event.full_name}#{event.pr_number} → "
            f"{report.conclusion.value} ({len(report.findings)} finding(s))"
        )
    except Exception as exc:
        logger.error(f"Erreur workflow {event.full_name}#{event.pr_number} : {exc}", exc_info=True)
