"""
Prompts de review — DevFleet.

Le prompt est envoyé au CLI Claude exécuté dans la sandbox, à la racine
du dépôt cloné. Le CLI doit répondre avec la sortie structurée décrite
par REVIEW_JSON_SCHEMA.
"""

from __future__ import annotations

import json
import shlex

SYSTEM_PROMPT = "Don't ask any follow up questions."

ALLOWED_TOOLS = (
    "Bash(git diff:*)",
    "Bash(git status:*)",
    "Bash(git log:*)",
    "Bash(git show:*)",
    "Bash(git remote show:*)",
    "Read",
    "Glob",
    "Grep",
    "LS",
    "Task",
)

REVIEW_JSON_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "findings": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "file": {"type": "string"},
                    "line": {"type": "integer", "minimum": 1},
                    "severity": {"type": "string", "enum": ["LOW", "MEDIUM", "HIGH", "CRITICAL"]},
                    "description": {"type": "string"},
                    "recommendation": {"type": "string"},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                },
                "required": ["file", "line", "severity", "description", "recommendation", "confidence"],
                "additionalProperties": False,
            },
        },
        "analysis_summary": {
            "type": "object",
            "properties": {
                "files_reviewed": {"type": "integer", "minimum": 0},
                "critical_severity": {"type": "integer", "minimum": 0},
                "high_severity": {"type": "integer", "minimum": 0},
                "medium_severity": {"type": "integer", "minimum": 0},
                "low_severity": {"type": "integer", "minimum": 0},
                "review_completed": {"type": "boolean"},
            },
            "required": [
                "files_reviewed",
                "critical_severity",
                "high_severity",
                "medium_severity",
                "low_severity",
                "review_completed",
            ],
            "additionalProperties": False,
        },
    },
}

REVIEW_PROMPT_TEMPLATE = """
You are a senior engineer conducting a focused review of the changes on this branch.

GIT STATUS:

```
!`git status`
```

FILES MODIFIED:

```
!`git diff --name-only origin/HEAD...`
```

COMMITS:

```
!`git log --no-decorate origin/HEAD...`
```

DIFF CONTENT:

```
!`git diff --merge-base origin/HEAD`
```

Review the complete diff above. This contains all code changes in the PR.

{{AGENT_PROMPT}}

{{RULES}}

REQUIRED OUTPUT FORMAT:

You MUST output your findings as structured JSON with this exact schema:

{
  "findings": [
    {
      "file": "path/to/file.py",
      "line": 42,
      "severity": "HIGH",
      "description": "User input passed to SQL query without parameterization",
      "recommendation": "Replace string formatting with parameterized queries using SQLAlchemy or equivalent",
      "confidence": 0.95
    }
  ],
  "analysis_summary": {
    "files_reviewed": 8,
    "critical_severity": 0,
    "high_severity": 1,
    "medium_severity": 0,
    "low_severity": 0,
    "review_completed": true
  }
}

SEVERITY GUIDELINES:
- **CRITICAL**: Issues that can break the system or user trust. Examples: code that corrupts data, exposes private information, blocks authentication, or makes the system unusable.
- **HIGH**: Issues that cause clear, direct problems in common situations. Examples: logic errors, unsafe patterns, or mistakes that can lead to data loss, crashes, or major malfunctions.
- **MEDIUM**: Issues that only surface under certain conditions but still matter. Examples: edge-case failures, unclear logic, inconsistent patterns, or design choices that make future changes harder.
- **LOW**: Minor issues that improve polish or long-term quality. Examples: small style inconsistencies, minor optimizations, or "defense-in-depth" improvements that reduce future risk.

CONFIDENCE SCORING:
- 0.9-1.0: The issue is clear, reproducible, and well-supported by evidence. You can point to the exact cause and show a reliable way to trigger it.
- 0.8-0.9: The pattern matches a known problem. It's not fully proven, but the reasoning is solid and similar issues have well-understood fixes.
- 0.7-0.8: The code looks questionable and could fail under the right conditions, but you don't have enough evidence to be fully confident.
- Below 0.7: Don't report (too speculative)

FINAL REMINDER:
Focus on HIGH and MEDIUM findings only. Better to miss some theoretical issues than flood the report with false positives. Each finding should be something an engineer would confidently raise in a PR review.

Begin your analysis now. Use the repository exploration tools to understand the codebase context, then analyze the PR changes.

Your final reply must contain the JSON and nothing else. You should not reply again after outputting the JSON.
"""


def format_rules(instructions: list[str]) -> str:
    """Règles actives de l'agent, encadrées en balises."""
    items = "\n".join(f"<rule_item>\n{text}\n</rule_item>" for text in instructions)
    return f"<rule_list>\n{items}\n</rule_list>"


def build_prompt(agent_prompt: str, rules: str) -> str:
    # Remplacement unique, dans cet ordre : un prompt d'agent contenant
    # « {{RULES}} » reçoit donc aussi les règles.
    return (
        REVIEW_PROMPT_TEMPLATE
        .replace("{{AGENT_PROMPT}}", agent_prompt, 1)
        .replace("{{RULES}}", rules, 1)
    )


def build_claude_command(prompt: str, model: str, json_schema: dict | None = None) -> str:
    """Commande shell qui envoie le prompt au CLI Claude (sortie JSON)."""
    schema = json.dumps(json_schema or REVIEW_JSON_SCHEMA, separators=(",", ":"))
    return (
        f"echo {shlex.quote(prompt)} | claude"
        f" -p"
        f" --append-system-prompt {shlex.quote(SYSTEM_PROMPT)}"
        f" --output-format json"
        f" --verbose"
        f" --json-schema {shlex.quote(schema)}"
        f" --allowedTools {shlex.quote(','.join(ALLOWED_TOOLS))}"
        f" --model {shlex.quote(model)}"
    )
