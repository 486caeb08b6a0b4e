from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from phasegate.agents import (
    AgentExecutor,
    AnalystAgent,
    ArchitectAgent,
    CriticAgent,
    DesignerAgent,
    DevOpsAgent,
    FrontendDeveloperAgent,
    ProductManagerAgent,
    ScrumMasterAgent,
    ValidatorAgent,
)
from phasegate.approval import GateError
from phasegate.backends import (
    AgentBackend,
    ClaudeCLIBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from phasegate.checker import CheckerPattern
from phasegate.clarification import (
    CLARIFICATION_MODES,
    ClarificationError,
    ClarificationQuestion,
    add_questions,
    answer_question,
    auto_resolve,
    set_mode,
)
from phasegate.config import BackendName, PhasegateConfig, load_config, save_config
from phasegate.engine import OrchestrationEngine, Project, ProjectError
from phasegate.logging_config import setup_logging
from phasegate.registry import PhaseRegistry, PhaseRegistryError, load_registry
from phasegate.rollback import RollbackCheck
from phasegate.state import StateStore, StateStoreError

DEFAULT_CONFIG = "phasegate.toml"
DOMAIN_ERRORS = (
    ClarificationError,
    GateError,
    PhaseRegistryError,
    ProjectError,
    StateStoreError,
)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: PhasegateConfig
    registry: PhaseRegistry
    state: StateStore
    engine: OrchestrationEngine
    analyst: AnalystAgent


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(backend_name: BackendName, repo_root: Path) -> AgentBackend:
    if backend_name == "openai":
        return OpenAIBackend()
    return ClaudeCLIBackend(working_directory=repo_root)


def _record_backend_event(state: StateStore, event: dict[str, Any]) -> None:
    state.record_event("backend_events", event)


def _build_backend(config: PhasegateConfig, repo_root: Path, state: StateStore) -> AgentBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, repo_root),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(config.backend.fallback, repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(state, event),
    )


def _build_executors(
    backend: AgentBackend, config: PhasegateConfig, analyst: AnalystAgent
) -> dict[str, AgentExecutor]:
    model = config.agents.model
    return {
        "analyst": analyst,
        "architect": ArchitectAgent(backend, model=model),
        "pm": ProductManagerAgent(backend, model=model),
        "designer": DesignerAgent(backend, model=model),
        "devops": DevOpsAgent(backend, model=model),
        "frontend_developer": FrontendDeveloperAgent(backend, model=model),
        "scrummaster": ScrumMasterAgent(backend, model=model),
        "validator": ValidatorAgent(backend, model=model),
    }


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    setup_logging(
        config.logging.level,
        repo_root / config.logging.file if config.logging.file else None,
    )
    registry_path = repo_root / config.project.registry_file if config.project.registry_file else None
    try:
        registry = load_registry(registry_path)
    except PhaseRegistryError as exc:
        raise click.ClickException(str(exc)) from exc
    state = StateStore(repo_root, backend_mode=config.state.backend)
    backend = _build_backend(config, repo_root, state)
    analyst = AnalystAgent(backend, model=config.agents.model)
    checker = None
    if config.checker.enabled:
        checker = CheckerPattern(
            CriticAgent(backend, model=config.agents.critic_model),
            phase_configs=registry.critics,
            personas=registry.personas,
            truncate_chars=config.checker.artifact_truncate_chars,
        )
    engine = OrchestrationEngine(
        registry,
        state,
        _build_executors(backend, config, analyst),
        checker=checker,
        resolver=analyst,
        config=config.engine,
        event_hook=lambda event: state.record_event("engine_events", event),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        registry=registry,
        state=state,
        engine=engine,
        analyst=analyst,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _project(runtime: Runtime, project_id: str) -> Project:
    try:
        return runtime.engine.load_project(project_id)
    except ProjectError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


config_option = click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)


@click.group()
def cli() -> None:
    """Phase orchestration CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "openai"]), default=None)
@click.option("--state-backend", type=click.Choice(["local", "notes"]), default=None)
@config_option
def init_command(backend: str | None, state_backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    if state_backend:
        config.state.backend = state_backend  # type: ignore[assignment]
    save_config(config_path, config)

    state = StateStore(repo_root, backend_mode=config.state.backend)
    click.echo(f"Initialized phasegate in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"State backend: {state.backend_mode}")


@cli.command("new-project")
@click.argument("project_id")
@click.option("--name", default=None)
@click.option(
    "--clarification-mode",
    type=click.Choice(list(CLARIFICATION_MODES)),
    default="interactive",
    show_default=True,
)
@click.option("--scale-tier", default=None)
@config_option
def new_project_command(
    project_id: str,
    name: str | None,
    clarification_mode: str,
    scale_tier: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    context = {"scale_tier": scale_tier} if scale_tier else {}
    try:
        project = runtime.engine.create_project(
            project_id, name, clarification_mode=clarification_mode, context=context
        )
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created project {project.project_id} at {project.current_phase}")


@cli.command("projects")
@config_option
def projects_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    projects = runtime.engine.list_projects()
    if not projects:
        click.echo("No projects found.")
        return
    for project in projects:
        click.echo(
            f"{project.project_id:<24} {project.current_phase:<24} "
            f"{len(project.phases_completed)} completed"
        )


@cli.command("status")
@click.argument("project_id")
@config_option
def status_command(project_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(runtime.engine.status(_project(runtime, project_id)))


@cli.command("run-phase")
@click.argument("project_id")
@click.option("--phase", default=None, help="Defaults to the project's current phase.")
@click.option("--instructions", default=None)
@config_option
def run_phase_command(
    project_id: str, phase: str | None, instructions: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    try:
        result = asyncio.run(
            runtime.engine.run_phase_agent(project, phase, instructions=instructions)
        )
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(result.to_dict())
    if not result.success:
        raise click.ClickException(f"{result.phase} {result.status}: {result.error}")


@cli.command("run-group")
@click.argument("project_id")
@click.argument("group_name")
@config_option
def run_group_command(project_id: str, group_name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    try:
        results = asyncio.run(runtime.engine.execute_parallel_group(project, group_name))
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json([result.to_dict() for result in results])
    failed = [result.phase for result in results if not result.success]
    if failed:
        raise click.ClickException(f"Group {group_name} failed in: {', '.join(failed)}")


@cli.command("workflow")
@click.argument("project_id")
@click.option("--sequential", is_flag=True, default=False, help="Disable parallel groups.")
@click.option("--no-fallback", is_flag=True, default=False)
@config_option
def workflow_command(project_id: str, sequential: bool, no_fallback: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    try:
        outcome = asyncio.run(
            runtime.engine.execute_workflow(
                project,
                enable_parallel=False if sequential else None,
                fallback_to_sequential=False if no_fallback else None,
            )
        )
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(outcome.to_dict())
    if not outcome.success:
        raise click.ClickException("; ".join(outcome.errors))


@cli.command("advance")
@click.argument("project_id")
@config_option
def advance_command(project_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    result = runtime.engine.advance(project)
    if not result.success:
        raise click.ClickException(result.reason)
    click.echo(f"Advanced {project_id}: {result.previous_phase} -> {result.current_phase}")


@cli.command("gates")
@click.argument("project_id")
@config_option
def gates_command(project_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    records = runtime.engine.approvals.get_project_gates(project.project_id)
    if not records:
        click.echo("No gates defined.")
        return
    for record in records:
        flag = "blocking" if record.blocking else "advisory"
        click.echo(f"{record.gate_name:<24} {record.phase:<20} {record.status:<13} {flag}")


@cli.command("approve")
@click.argument("project_id")
@click.argument("gate_name")
@click.option("--by", "approved_by", default="user", show_default=True)
@click.option("--score", type=click.IntRange(0, 100), default=None)
@click.option("--notes", default=None)
@config_option
def approve_command(
    project_id: str,
    gate_name: str,
    approved_by: str,
    score: int | None,
    notes: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    try:
        record = runtime.engine.approve_gate(
            project, gate_name, approved_by, score=score, notes=notes
        )
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Gate {record.gate_name} {record.status} by {approved_by}")


@cli.command("reject")
@click.argument("project_id")
@click.argument("gate_name")
@click.option("--reason", required=True)
@click.option("--by", "rejected_by", default="user", show_default=True)
@config_option
def reject_command(
    project_id: str, gate_name: str, reason: str, rejected_by: str, config_value: str
) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    try:
        record = runtime.engine.reject_gate(project, gate_name, rejected_by, reason)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Gate {record.gate_name} rejected: {reason}")


@cli.command("resolve-escalation")
@click.argument("project_id")
@click.argument("phase")
@click.option("--by", "resolved_by", default="user", show_default=True)
@config_option
def resolve_escalation_command(
    project_id: str, phase: str, resolved_by: str, config_value: str
) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    if not runtime.engine.resolve_escalation(project, phase, resolved_by):
        raise click.ClickException(f"No open escalation for {phase}")
    click.echo(f"Escalation for {phase} resolved.")


@cli.command("rollback-preview")
@click.argument("project_id")
@click.argument("target_phase")
@config_option
def rollback_preview_command(project_id: str, target_phase: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    preview = runtime.engine.preview_revert(project, target_phase)
    if isinstance(preview, RollbackCheck):
        raise click.ClickException(preview.reason)
    _echo_json(preview.to_dict())


@cli.command("rollback")
@click.argument("project_id")
@click.argument("target_phase")
@click.option("--yes", "confirm", is_flag=True, default=False, help="Confirm the rollback.")
@config_option
def rollback_command(project_id: str, target_phase: str, confirm: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    try:
        result = asyncio.run(runtime.engine.revert_to_phase(project, target_phase, confirm))
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not result.success:
        raise click.ClickException(result.error or "Rollback failed")
    click.echo(f"Rolled back {project_id} to {target_phase}")
    click.echo(f"Snapshot: {result.snapshot_id}")
    click.echo(f"Commit: {result.commit_id}")


@cli.command("snapshots")
@click.argument("project_id")
@click.option("--phase", default=None)
@config_option
def snapshots_command(project_id: str, phase: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    snapshots = runtime.engine.rollback.list_snapshots(project.project_id, phase)
    if not snapshots:
        click.echo("No snapshots found.")
        return
    for snapshot in snapshots:
        click.echo(
            f"{snapshot.snapshot_id} {snapshot.commit_id[:10]} "
            f"{len(snapshot.artifacts)} artifact(s) {snapshot.created_at}"
        )


@cli.command("restore-snapshot")
@click.argument("project_id")
@click.argument("snapshot_id")
@config_option
def restore_snapshot_command(project_id: str, snapshot_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    restored = runtime.engine.rollback.restore_snapshot(project.project_id, snapshot_id)
    if not restored:
        raise click.ClickException(f"Snapshot not found or empty: {snapshot_id}")
    click.echo(f"Restored {len(restored)} artifact(s): {', '.join(restored)}")


@cli.command("classify")
@click.argument("phase")
@click.argument("message")
@config_option
def classify_command(phase: str, message: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    classification, strategy = runtime.engine.remediate(phase, message)
    _echo_json({"classification": classification.to_dict(), "remediation": strategy.to_dict()})


@cli.group("clarify")
def clarify_group() -> None:
    """Manage clarification questions for a project."""


@clarify_group.command("add")
@click.argument("project_id")
@click.option("--id", "question_id", required=True)
@click.option("--question", required=True)
@click.option("--category", default="general", show_default=True)
@click.option("--option", "options", multiple=True)
@config_option
def clarify_add_command(
    project_id: str,
    question_id: str,
    question: str,
    category: str,
    options: tuple[str, ...],
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    try:
        add_questions(
            project.clarification,
            [
                ClarificationQuestion(
                    id=question_id,
                    category=category,
                    question=question,
                    suggested_options=list(options),
                )
            ],
        )
    except ClarificationError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.engine.save_project(project)
    click.echo(f"Added question {question_id}")


@clarify_group.command("list")
@click.argument("project_id")
@config_option
def clarify_list_command(project_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_project(runtime, project_id).clarification.to_dict())


@clarify_group.command("answer")
@click.argument("project_id")
@click.argument("question_id")
@click.argument("answer")
@config_option
def clarify_answer_command(
    project_id: str, question_id: str, answer: str, config_value: str
) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    try:
        answer_question(project.clarification, question_id, answer)
    except ClarificationError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.engine.save_project(project)
    click.echo(f"Answered {question_id}")


@clarify_group.command("mode")
@click.argument("project_id")
@click.argument("mode", type=click.Choice(list(CLARIFICATION_MODES)))
@config_option
def clarify_mode_command(project_id: str, mode: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    set_mode(project.clarification, mode)
    runtime.engine.save_project(project)
    click.echo(f"Clarification mode set to {mode}")


@clarify_group.command("skip")
@click.argument("project_id")
@config_option
def clarify_skip_command(project_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    project.clarification.skipped = True
    runtime.engine.save_project(project)
    click.echo("Clarification skipped.")


@clarify_group.command("auto-resolve")
@click.argument("project_id")
@click.option("--question", "question_ids", multiple=True)
@config_option
def clarify_auto_resolve_command(
    project_id: str, question_ids: tuple[str, ...], config_value: str
) -> None:
    runtime = _runtime(config_value)
    project = _project(runtime, project_id)
    context = {"project_id": project.project_id, "project_name": project.name, **project.context}
    try:
        resolved = asyncio.run(
            auto_resolve(
                project.clarification,
                runtime.analyst,
                context,
                list(question_ids) or None,
            )
        )
    except ClarificationError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.engine.save_project(project)
    click.echo(f"Resolved {len(resolved)} question(s).")
    for question in resolved:
        click.echo(f"{question.id}: {question.ai_assumption}")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["claude", "openai"]))
@config_option
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    if config.backend.fallback == backend_name:
        config.backend.fallback = "openai" if backend_name == "claude" else "claude"
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
