"""Tests des prompts et de la commande CLI."""

import json
import shlex

from devfleet.agents.prompts import (
    ALLOWED_TOOLS,
    REVIEW_JSON_SCHEMA,
    SYSTEM_PROMPT,
    build_claude_command,
    build_prompt,
    format_rules,
)


class TestPrompts:

    def test_rules_wrapped(self):
        assert format_rules(["A", "B"]) == (
            "<rule_list>\n<rule_item>\nA\n</rule_item>\n<rule_item>\nB\n</rule_item>\n</rule_list>"
        )

    def test_no_rules(self):
        assert format_rules([]) == "<rule_list>\n\n</rule_list>"

    def test_placeholders_replaced(self):
        prompt = build_prompt("Check SQL injections.", "<rule_list>\n</rule_list>")

        assert "Check SQL injections." in prompt
        assert "<rule_list>" in prompt
        assert "{{AGENT_PROMPT}}" not in prompt
        assert "{{RULES}}" not in prompt
        assert prompt.index("Check SQL injections.") < prompt.index("<rule_list>")

    def test_schema_requires_finding_fields(self):
        item = REVIEW_JSON_SCHEMA["properties"]["findings"]["items"]
        assert set(item["required"]) == {
            "file", "line", "severity", "description", "recommendation", "confidence",
        }
        assert item["properties"]["severity"]["enum"] == ["LOW", "MEDIUM", "HIGH", "CRITICAL"]


class TestClaudeCommand:

    def test_command_round_trips_through_shell(self):
        prompt = 'Review `git diff` for "$HOME" and it\'s \\ backslashes'
        command = build_claude_command(prompt, "claude-sonnet-4-5-20250929")

        tokens = shlex.split(command)

        assert tokens[:3] == ["echo", prompt, "|"]
        assert tokens[3:5] == ["claude", "-p"]
        assert tokens[tokens.index("--append-system-prompt") + 1] == SYSTEM_PROMPT
        assert tokens[tokens.index("--output-format") + 1] == "json"
        assert "--verbose" in tokens
        assert json.loads(tokens[tokens.index("--json-schema") + 1]) == REVIEW_JSON_SCHEMA
        assert tokens[tokens.index("--allowedTools") + 1] == ",".join(ALLOWED_TOOLS)
        assert tokens[-2:] == ["--model", "claude-sonnet-4-5-20250929"]

    def test_read_only_git_tools(self):
        assert "Bash(git diff:*)" in ALLOWED_TOOLS
        assert not any(t.startswith("Bash(git push") for t in ALLOWED_TOOLS)
