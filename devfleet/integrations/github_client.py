"""
Client GitHub App — DevFleet.

Fournit l'accès à l'API GitHub, authentifié comme installation de l'App :
- Jeton d'installation (clone des dépôts dans la sandbox)
- Création / mise à jour des Check Runs
- Fichiers et reviews d'une PR
- Publication des findings en review (commentaires inline)
- Vérification de la signature des webhooks
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Iterable

from github import Auth, Github, GithubException, GithubIntegration
from github.CheckRun import CheckRun

from devfleet.config import Settings, get_settings
from devfleet.models import (
    ApprovalStatus,
    CheckConclusion,
    CheckRunOutput,
    Finding,
    ReviewData,
)
from devfleet.report import build_fallback_body, build_review_body, format_finding_comment, review_event
from devfleet.utils.helpers import truncate

logger = logging.getLogger("devfleet.github")


def verify_webhook_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Vérifie l'en-tête X-Hub-Signature-256 (HMAC-SHA256 du corps brut)."""
    if not secret or not signature or not signature.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def summarize_reviews(reviews: Iterable[Any]) -> ReviewData:
    """Statut d'approbation d'après la dernière review de chaque relecteur."""
    reviews = list(reviews)
    if not reviews:
        return ReviewData()

    submitted = sorted(
        (r for r in reviews if r.submitted_at), key=lambda r: r.submitted_at
    )
    first_review_at = submitted[0].submitted_at if submitted else None

    latest_by_user: dict[str, Any] = {}
    for review in reviews:
        login = review.user.login if review.user else None
        if not login:
            continue
        existing = latest_by_user.get(login)
        if (
            existing is None
            or (review.submitted_at and existing.submitted_at
                and review.submitted_at > existing.submitted_at)
        ):
            latest_by_user[login] = review

    states = {r.state for r in latest_by_user.values()}
    if "CHANGES_REQUESTED" in states:
        status = ApprovalStatus.CHANGES_REQUESTED
    elif "APPROVED" in states:
        status = ApprovalStatus.APPROVED
    else:
        status = ApprovalStatus.PENDING

    return ReviewData(
        approval_status=status,
        review_count=len(reviews),
        first_review_at=first_review_at,
    )


class GitHubClient:
    """Wrapper autour de PyGithub pour une installation de la GitHub App."""

    def __init__(
        self,
        installation_id: int,
        settings: Settings | None = None,
        integration: GithubIntegration | None = None,
        github: Github | None = None,
    ):
        self._settings = settings or get_settings()
        self._installation_id = int(installation_id)

        if integration is None and github is None:
            if not self._settings.github_app_configured:
                raise ValueError("GITHUB_APP_ID / GITHUB_APP_PRIVATE_KEY non configurés.")
            auth = Auth.AppAuth(self._settings.github_app_id, self._settings.decoded_private_key)
            integration = GithubIntegration(auth=auth, base_url=self._settings.github_api_url)

        self._integration = integration
        self._gh = github or integration.get_github_for_installation(self._installation_id)

    # ── Authentification ────────────────────

    def get_installation_token(self) -> str:
        """Jeton d'accès court de l'installation (utilisé pour `git clone`)."""
        if self._integration is None:
            raise ValueError("Aucune GithubIntegration : jeton d'installation indisponible.")
        return self._integration.get_access_token(self._installation_id).token

    # ── Check Runs ──────────────────────────

    def create_check_run(self, owner: str, repo: str, head_sha: str) -> CheckRun:
        """Crée le Check Run `in_progress` sur le commit de tête."""
        repository = self._gh.get_repo(f"{owner}/{repo}")
        check_run = repository.create_check_run(
            name=self._settings.check_run_name,
            head_sha=head_sha,
            status="in_progress",
        )
        logger.info(f"Check Run {check_run.id} créé sur {owner}/{repo}@{head_sha[:7]}")
        return check_run

    def update_check_run(
        self,
        owner: str,
        repo: str,
        check_run_id: int,
        conclusion: CheckConclusion,
        output: CheckRunOutput,
    ) -> CheckRun:
        """Clôture le Check Run avec sa conclusion."""
        repository = self._gh.get_repo(f"{owner}/{repo}")
        check_run = repository.get_check_run(check_run_id)
        payload: dict[str, str] = {
            "title": output.title,
            "summary": truncate(output.summary),
        }
        if output.text:
            payload["text"] = truncate(output.text)
        check_run.edit(
            name=self._settings.check_run_name,
            status="completed",
            conclusion=conclusion.value,
            output=payload,
        )
        logger.info(f"Check Run {check_run_id} → {conclusion.value}")
        return check_run

    # ── Pull Requests ───────────────────────

    def list_pull_request_files(self, owner: str, repo: str, pr_number: int) -> list[dict[str, Any]]:
        pr = self._gh.get_repo(f"{owner}/{repo}").get_pull(pr_number)
        return [
            {
                "filename": f.filename,
                "status": f.status or "",
                "additions": f.additions,
                "deletions": f.deletions,
                "patch": f.patch or "",
            }
            for f in pr.get_files()
        ]

    def get_pull_request_payload(self, owner: str, repo: str, pr_number: int) -> dict[str, Any]:
        """Reconstruit un payload de type webhook (mode CLI)."""
        repository = self._gh.get_repo(f"{owner}/{repo}")
        pr = repository.get_pull(pr_number)
        return {
            "action": "synchronize",
            "installation": {"id": self._installation_id},
            "repository": {
                "id": repository.id,
                "name": repository.name,
                "owner": {"login": repository.owner.login},
            },
            "pull_request": pr.raw_data,
        }

    def fetch_pull_request_reviews(self, owner: str, repo: str, pr_number: int) -> ReviewData:
        """Données de review de la PR ; données vides en cas d'erreur API."""
        try:
            pr = self._gh.get_repo(f"{owner}/{repo}").get_pull(pr_number)
            return summarize_reviews(pr.get_reviews())
        except GithubException as exc:
            logger.error(f"Reviews indisponibles pour {owner}/{repo}#{pr_number} : {exc}")
            return ReviewData()

    def post_review(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        head_sha: str,
        findings: list[Finding],
    ) -> dict[str, Any]:
        """Publie les findings en une review inline, avec repli en commentaire unique."""
        if not findings:
            return {"posted": False, "comment_count": 0, "fallback": False}

        repository = self._gh.get_repo(f"{owner}/{repo}")
        pr = repository.get_pull(pr_number)
        body = build_review_body(findings)
        comments = [
            {"path": f.file, "line": f.line, "body": format_finding_comment(f)}
            for f in findings
        ]

        try:
            pr.create_review(
                commit=repository.get_commit(head_sha),
                body=body,
                event=review_event(findings),
                comments=comments,
            )
            logger.info(f"Review postée sur {owner}/{repo}#{pr_number} ({len(findings)} finding(s))")
            return {"posted": True, "comment_count": len(findings), "fallback": False}
        except GithubException as exc:
            # Ligne hors du diff, fichier inconnu… → un seul commentaire global
            logger.warning(f"Review inline refusée ({exc.status}) — repli en commentaire.")
            pr.create_issue_comment(build_fallback_body(findings))
            return {"posted": True, "comment_count": len(findings), "fallback": True}
