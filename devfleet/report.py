"""
Rapports — DevFleet.

Mise en forme des résultats d'agents : commentaires de review GitHub,
commentaire de repli et sortie du Check Run.
"""

from __future__ import annotations

from devfleet.models import (
    BLOCKING_SEVERITIES,
    AgentRunResult,
    CheckConclusion,
    CheckRunOutput,
    Finding,
    FindingSeverity,
)
from devfleet.parsers.claude_output import extract_findings
from devfleet.utils.helpers import pluralize, severity_emoji

REPORT_TITLE = "DevFleet"

# Ordre d'affichage du résumé
_SEVERITY_ORDER = (
    FindingSeverity.CRITICAL,
    FindingSeverity.HIGH,
    FindingSeverity.MEDIUM,
    FindingSeverity.LOW,
)


# ════════════════════════════════════════════
#  Agrégation
# ════════════════════════════════════════════

def collect_findings(results: list[AgentRunResult]) -> list[Finding]:
    """Findings de toutes les exécutions réussies, dans l'ordre des agents."""
    findings: list[Finding] = []
    for run in results:
        if not run.succeeded:
            continue
        findings.extend(extract_findings(run.result))
    return findings


def has_blocking_findings(findings: list[Finding]) -> bool:
    return any(f.severity in BLOCKING_SEVERITIES for f in findings)


def decide_conclusion(results: list[AgentRunResult], findings: list[Finding]) -> CheckConclusion:
    """`failure` si un agent a échoué ou si un finding HIGH/CRITICAL existe."""
    if any(not r.succeeded for r in results):
        return CheckConclusion.FAILURE
    if has_blocking_findings(findings):
        return CheckConclusion.FAILURE
    return CheckConclusion.SUCCESS


def review_event(findings: list[Finding]) -> str:
    return "REQUEST_CHANGES" if has_blocking_findings(findings) else "COMMENT"


# ════════════════════════════════════════════
#  Review GitHub
# ════════════════════════════════════════════

def _severity_counts(findings: list[Finding]) -> str:
    parts = []
    for severity in _SEVERITY_ORDER:
        count = sum(1 for f in findings if f.severity == severity)
        if count:
            parts.append(f"{severity_emoji(severity)} {count} {severity.value.lower()}")
    return ", ".join(parts)


def build_review_body(findings: list[Finding]) -> str:
    return (
        "## DevFleet Code Review\n\n"
        f"Found **{len(findings)}** {'issue' if len(findings) == 1 else 'issues'}: "
        f"{_severity_counts(findings)}"
    )


def format_finding_comment(finding: Finding) -> str:
    """Commentaire inline d'un finding."""
    return (
        f"{severity_emoji(finding.severity)} **{finding.severity.value}** "
        f"(confidence: {round(finding.confidence * 100)}%)\n\n"
        f"{finding.description}\n\n"
        f"**Recommendation:** {finding.recommendation}"
    )


def build_fallback_body(findings: list[Finding]) -> str:
    """Commentaire unique listant tous les findings."""
    sections = [
        f"### {severity_emoji(f.severity)} {f.file}:{f.line}\n\n"
        f"{f.description}\n\n"
        f"**Recommendation:** {f.recommendation}"
        for f in findings
    ]
    return build_review_body(findings) + "\n\n" + "\n\n---\n\n".join(sections)


# ════════════════════════════════════════════
#  Check Run
# ════════════════════════════════════════════

def build_check_run_output(
    results: list[AgentRunResult],
    findings: list[Finding],
    agent_names: dict[str, str] | None = None,
) -> CheckRunOutput:
    """Sortie Markdown du Check Run : une ligne par agent, puis les findings."""
    agent_names = agent_names or {}

    if not results:
        return CheckRunOutput(
            title=REPORT_TITLE,
            summary="DevFleet completed successfully — no agent enabled for this repository.",
        )

    failed = [r for r in results if not r.succeeded]
    if failed:
        summary = f"⚠️ {pluralize(len(failed), 'agent')} failed out of {len(results)}."
    elif has_blocking_findings(findings):
        summary = f"🔴 Blocking issues found ({_severity_counts(findings)})."
    elif findings:
        summary = f"✅ DevFleet completed successfully with {pluralize(len(findings), 'finding')}."
    else:
        summary = "✅ DevFleet completed successfully"

    lines = [
        "| Agent | Status | Findings | Duration | Cost |",
        "|-------|--------|----------|----------|------|",
    ]
    for run in results:
        name = agent_names.get(run.agent_id, run.agent_id)
        if run.succeeded:
            count = len(extract_findings(run.result))
            lines.append(
                f"| {name} | ✅ pass | {count} | {run.result.duration_ms / 1000:.1f}s "
                f"| ${run.result.total_cost_usd:.4f} |"
            )
        else:
            error = (run.error or "unknown error").replace("|", "\\|").splitlines()[0][:200]
            lines.append(f"| {name} | ❌ error: {error} | - | - | - |")

    if findings:
        lines.append("")
        lines.append("### Findings")
        for f in findings:
            lines.append(
                f"- {severity_emoji(f.severity)} **{f.severity.value}** "
                f"`{f.file}:{f.line}` — {f.description}"
            )

    return CheckRunOutput(title=REPORT_TITLE, summary=summary, text="\n".join(lines))


def build_failure_output(error: BaseException) -> CheckRunOutput:
    """Sortie du Check Run quand le workflow lui-même a planté."""
    return CheckRunOutput(
        title=REPORT_TITLE,
        summary=f"❌ DevFleet failed: {error}",
    )
