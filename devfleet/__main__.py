"""
Point d'entrée CLI & Webhook — DevFleet.

Modes :
  - CLI    : python -m devfleet --repo owner/repo --pr 42 --installation 123
  - Server : python -m devfleet --server --port 8080
  - DB     : python -m devfleet --init-db
"""

from __future__ import annotations

import asyncio
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from devfleet.db import init_db, session_scope
from devfleet import store
from devfleet.integrations.github_client import GitHubClient
from devfleet.models import CheckConclusion, PullRequestEvent, WorkflowReport
from devfleet.orchestrator import Orchestrator
from devfleet.utils.helpers import severity_emoji
from devfleet.utils.logger import setup_logging

console = Console()


# ════════════════════════════════════════════
#  CLI
# ════════════════════════════════════════════

@click.group(invoke_without_command=True)
@click.option("--repo", "-r", help="Repository (owner/repo)", required=False)
@click.option("--pr", "-p", "pr_number", type=int, help="Numéro de la PR", required=False)
@click.option("--installation", "-i", "installation_id", type=int,
              help="ID d'installation de la GitHub App", required=False)
@click.option("--server", is_flag=True, help="Lancer le serveur webhook")
@click.option("--port", default=8080, type=int, help="Port du serveur webhook")
@click.option("--init-db", "init_database", is_flag=True, help="Créer les tables manquantes")
@click.option("--json-output", is_flag=True, help="Sortie JSON brute")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              default=None, help="Niveau de log (défaut : LOG_LEVEL)")
@click.pass_context
def main(ctx: click.Context, repo: str | None, pr_number: int | None,
         installation_id: int | None, server: bool, port: int,
         init_database: bool, json_output: bool, log_level: str | None) -> None:
    """🤖 DevFleet — Agents de review sur les Pull Requests."""
    setup_logging(log_level)

    if init_database:
        init_db()
        console.print("[green]Tables créées.[/]")
        if not server and not repo:
            return

    if server:
        _run_server(port)
        return

    if not repo or not pr_number or not installation_id or "/" not in repo:
        console.print(
            Panel(
                "[bold red]Paramètres manquants.[/]\n\n"
                "Usage :\n"
                "  python -m devfleet --repo owner/repo --pr 42 --installation 123\n"
                "  python -m devfleet --server --port 8080\n"
                "  python -m devfleet --init-db",
                title="🤖 DevFleet",
            )
        )
        sys.exit(1)

    report = asyncio.run(_run_workflow(repo, pr_number, installation_id))

    if json_output:
        console.print_json(report.model_dump_json(indent=2))
    else:
        _display_report(report)


async def _run_workflow(repo: str, pr_number: int, installation_id: int) -> WorkflowReport:
    """Rejoue le workflow d'une PR existante."""
    console.print(Panel(
        f"[bold cyan]Review de PR : {repo} #{pr_number}[/]\n"
        f"Installation : {installation_id}",
        title="🤖 DevFleet",
    ))

    owner, name = repo.split("/", 1)
    gh = GitHubClient(installation_id)
    event = PullRequestEvent.from_payload(gh.get_pull_request_payload(owner, name, pr_number))

    with session_scope() as session:
        pr_id = store.upsert_pull_request(session, event)
    if pr_id is None:
        console.print(f"[yellow]Dépôt {repo} inconnu en base : résultats non rattachés.[/]")

    orchestrator = Orchestrator(github_client=gh)
    return await orchestrator.handle_pull_request(event, pr_id)


def _display_report(report: WorkflowReport) -> None:
    """Affiche le rapport final en mode Rich dans le terminal."""
    ok = report.conclusion == CheckConclusion.SUCCESS
    color = "green" if ok else "red"
    emoji = "✅" if ok else "❌"

    console.print()
    console.print(Panel(
        f"[bold {color}]{emoji} {report.conclusion.value}[/]  —  "
        f"Check Run [bold]{report.check_run_id}[/]",
        title="📋 Conclusion",
        border_style=color,
    ))

    table = Table(title="\n🤖 Agents")
    table.add_column("Agent", style="cyan")
    table.add_column("Statut", justify="center")
    table.add_column("Durée", justify="right")
    table.add_column("Coût", justify="right")
    table.add_column("Erreur")
    for run in report.results:
        if run.succeeded:
            table.add_row(
                run.agent_id,
                "[green]pass[/]",
                f"{run.result.duration_ms / 1000:.1f}s",
                f"${run.result.total_cost_usd:.4f}",
                "",
            )
        else:
            table.add_row(run.agent_id, "[red]error[/]", "-", "-", (run.error or "")[:80])
    console.print(table)

    if report.findings:
        console.print("\n[bold]Findings :[/]")
        for i, f in enumerate(report.findings, 1):
            console.print(f"  {i}. {severity_emoji(f.severity)} {escape(f'[{f.severity.value}]')} {f.file}:{f.line}")
            console.print(f"     {f.description}")
            console.print(f"     💡 {f.recommendation}")

    if report.review_posted:
        console.print(f"\n💬 Review postée ({report.comment_count} commentaire(s))")
    console.print()


# ════════════════════════════════════════════
#  WEBHOOK SERVER (FastAPI)
# ════════════════════════════════════════════

def _run_server(port: int) -> None:
    """Lance le serveur FastAPI pour recevoir les webhooks GitHub."""
    import uvicorn
    from devfleet.webhook import create_app

    console.print(Panel(
        f"[bold green]Serveur webhook démarré sur le port {port}[/]\n"
        "En attente d'événements GitHub…",
        title="🤖 DevFleet Server",
    ))
    app = create_app()
    # log_config=None : uvicorn garde le handler Rich posé par setup_logging
    uvicorn.run(app, host="0.0.0.0", port=port, log_config=None)


if __name__ == "__main__":
    main()
