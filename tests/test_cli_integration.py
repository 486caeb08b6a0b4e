import json
import re
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from phasegate.backends.base import AgentBackend
from phasegate.cli import cli
from phasegate.config import load_config, save_config

STACK = json.dumps({"frontend": "react", "backend": "fastapi", "database": "postgres"})


def _required_outputs(prompt: str) -> list[str]:
    names: list[str] = []
    collecting = False
    for line in prompt.splitlines():
        if line == "## Required outputs":
            collecting = True
            continue
        if collecting:
            if not line.startswith("- "):
                break
            names.append(line[2:].strip())
    return names


class FakeBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        if user_prompt.startswith("# ROLE"):
            yield json.dumps({"feedback": [], "verdict": "approve"})
            return
        if user_prompt.startswith("Answer each open question"):
            ids = re.findall(r"^- (\S+) \(", user_prompt, re.MULTILINE)
            yield json.dumps(
                {question_id: {"assumption": f"assume {question_id}", "rationale": "default"} for question_id in ids}
            )
            return
        blocks = []
        for name in _required_outputs(user_prompt):
            body = STACK if name.endswith(".json") else f"---\ntitle: {name}\n---\n# {name}"
            blocks.append(f"=== FILE: {name} ===\n{body}\n=== END FILE ===")
        yield "\n".join(blocks) or "Nothing to generate."


def _quiet_logging(config_path: Path) -> None:
    config = load_config(config_path)
    config.logging.level = "ERROR"
    save_config(config_path, config)


def _setup(tmp_path: Path, monkeypatch) -> CliRunner:
    repo = tmp_path / "repo"
    repo.mkdir()
    monkeypatch.chdir(repo)
    monkeypatch.setattr(
        "phasegate.cli._build_backend", lambda config, repo_root, state: FakeBackend()
    )
    runner = CliRunner()
    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert "Initialized phasegate" in init_result.output
    _quiet_logging(repo / "phasegate.toml")
    return runner


def test_cli_project_lifecycle(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)

    created = runner.invoke(cli, ["new-project", "shop", "--name", "Shop", "--scale-tier", "startup"])
    assert created.exit_code == 0
    assert "Created project shop at ANALYSIS" in created.output

    duplicate = runner.invoke(cli, ["new-project", "shop"])
    assert duplicate.exit_code != 0
    assert "already exists" in duplicate.output

    added = runner.invoke(
        cli,
        ["clarify", "add", "shop", "--id", "q1", "--question", "Guest checkout?", "--option", "yes"],
    )
    assert added.exit_code == 0

    blocked = runner.invoke(cli, ["run-phase", "shop"])
    assert blocked.exit_code != 0
    assert "Unresolved clarification questions: q1" in blocked.output

    resolved = runner.invoke(cli, ["clarify", "auto-resolve", "shop"])
    assert resolved.exit_code == 0
    assert "Resolved 1 question(s)." in resolved.output
    assert "q1: assume q1" in resolved.output

    analysis = runner.invoke(cli, ["run-phase", "shop"])
    assert analysis.exit_code == 0
    assert '"success": true' in analysis.output
    assert '"project-brief.md"' in analysis.output

    advanced = runner.invoke(cli, ["advance", "shop"])
    assert advanced.exit_code == 0
    assert "Advanced shop: ANALYSIS -> STACK_SELECTION" in advanced.output

    workflow = runner.invoke(cli, ["workflow", "shop"])
    assert workflow.exit_code == 0
    assert '"halted_reason": "Blocking gate stack_approved is pending"' in workflow.output

    gates = runner.invoke(cli, ["gates", "shop"])
    assert gates.exit_code == 0
    stack_line = next(line for line in gates.output.splitlines() if line.startswith("stack_approved"))
    assert "pending" in stack_line and "blocking" in stack_line

    approved = runner.invoke(cli, ["approve", "shop", "stack_approved", "--by", "cto"])
    assert approved.exit_code == 0
    assert "Gate stack_approved approved by cto" in approved.output

    again = runner.invoke(cli, ["approve", "shop", "stack_approved"])
    assert again.exit_code != 0
    assert "already approved" in again.output

    assert runner.invoke(cli, ["advance", "shop"]).exit_code == 0
    prd = runner.invoke(cli, ["run-phase", "shop"])
    assert prd.exit_code == 0
    assert '"PRD.md"' in prd.output

    status = runner.invoke(cli, ["status", "shop"])
    assert status.exit_code == 0
    assert '"current_phase": "SPEC_PM"' in status.output
    assert '"scale_tier": "startup"' in status.output

    preview = runner.invoke(cli, ["rollback-preview", "shop", "STACK_SELECTION"])
    assert preview.exit_code == 0
    assert '"phases_to_remove"' in preview.output

    unconfirmed = runner.invoke(cli, ["rollback", "shop", "STACK_SELECTION"])
    assert unconfirmed.exit_code != 0
    assert "confirmation required" in unconfirmed.output

    rolled_back = runner.invoke(cli, ["rollback", "shop", "STACK_SELECTION", "--yes"])
    assert rolled_back.exit_code == 0
    assert "Rolled back shop to STACK_SELECTION" in rolled_back.output
    snapshot_id = re.search(r"Snapshot: (\S+)", rolled_back.output).group(1)
    assert snapshot_id.startswith("snap-shop-stack-selection-1-")

    snapshots = runner.invoke(cli, ["snapshots", "shop"])
    assert snapshots.exit_code == 0
    assert snapshot_id in snapshots.output

    restored = runner.invoke(cli, ["restore-snapshot", "shop", snapshot_id])
    assert restored.exit_code == 0
    assert "Restored 3 artifact(s): PRD.md, stack-decision.md, stack.json" in restored.output

    gates_after = runner.invoke(cli, ["gates", "shop"])
    stack_line = next(line for line in gates_after.output.splitlines() if line.startswith("stack_approved"))
    assert "pending" in stack_line

    listing = runner.invoke(cli, ["projects"])
    assert listing.exit_code == 0
    assert re.search(r"shop\s+STACK_SELECTION\s+1 completed", listing.output)


def test_cli_classify_and_reject(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)
    assert runner.invoke(cli, ["new-project", "shop"]).exit_code == 0

    classified = runner.invoke(cli, ["classify", "SPEC_PM", "PRD is missing requirement for search"])
    assert classified.exit_code == 0
    assert '"kind": "missing_requirement_mapping"' in classified.output
    assert '"agent_to_rerun": "scrummaster"' in classified.output

    missing_reason = runner.invoke(cli, ["reject", "shop", "stack_approved"])
    assert missing_reason.exit_code != 0

    rejected = runner.invoke(cli, ["reject", "shop", "stack_approved", "--reason", "too costly"])
    assert rejected.exit_code == 0
    assert "Gate stack_approved rejected: too costly" in rejected.output

    unknown = runner.invoke(cli, ["approve", "shop", "no_such_gate"])
    assert unknown.exit_code != 0
    assert "Unknown gate: no_such_gate" in unknown.output

    no_escalation = runner.invoke(cli, ["resolve-escalation", "shop", "ANALYSIS"])
    assert no_escalation.exit_code != 0
    assert "No open escalation for ANALYSIS" in no_escalation.output

    missing_project = runner.invoke(cli, ["status", "ghost"])
    assert missing_project.exit_code != 0
    assert "Unknown project: ghost" in missing_project.output


def test_cli_clarification_and_backend_commands(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)
    assert runner.invoke(cli, ["new-project", "shop"]).exit_code == 0
    runner.invoke(cli, ["clarify", "add", "shop", "--id", "q1", "--question", "Region?"])

    answered = runner.invoke(cli, ["clarify", "answer", "shop", "q1", "EU"])
    assert answered.exit_code == 0
    unknown = runner.invoke(cli, ["clarify", "answer", "shop", "q9", "?"])
    assert unknown.exit_code != 0
    assert "Unknown clarification question: q9" in unknown.output

    assert runner.invoke(cli, ["clarify", "mode", "shop", "hybrid"]).exit_code == 0
    assert runner.invoke(cli, ["clarify", "skip", "shop"]).exit_code == 0
    listed = runner.invoke(cli, ["clarify", "list", "shop"])
    assert '"mode": "hybrid"' in listed.output
    assert '"user_answer": "EU"' in listed.output
    assert '"skipped": true' in listed.output

    switched = runner.invoke(cli, ["backend", "openai"])
    assert switched.exit_code == 0
    config = load_config(Path.cwd() / "phasegate.toml")
    assert config.backend.primary == "openai"
    assert config.backend.fallback == "claude"
