import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from phasegate.agents import AgentExecutor, PhaseParams
from phasegate.checker import CheckerPattern, CriticReviewer
from phasegate.clarification import AssumptionResolver, ClarificationQuestion, add_questions
from phasegate.config import EngineConfig
from phasegate.engine import OrchestrationEngine, ProjectError, WorkflowResult
from phasegate.registry import (
    CriticPersona,
    CriticPhaseConfig,
    ParallelGroup,
    PhaseRegistryError,
    default_registry,
)
from phasegate.rollback import RollbackPreview
from phasegate.state import StateStore

STACK = json.dumps({"frontend": "react", "backend": "fastapi", "database": "postgres"})
MEDIUM = json.dumps(
    {
        "feedback": [
            {
                "severity": "medium",
                "category": "Coverage",
                "concern": "No acceptance criteria",
                "recommendation": "Add acceptance criteria",
            }
        ]
    }
)
CRITICAL = json.dumps({"feedback": [{"severity": "critical", "concern": "Plaintext passwords"}]})
CLEAN = json.dumps({"feedback": []})


def _content(name: str) -> str:
    if name.endswith(".json"):
        return STACK
    return f"---\ntitle: {name}\n---\n# {name}\n"


class FakeExecutor(AgentExecutor):
    def __init__(
        self,
        *,
        fail: tuple[str, ...] = (),
        delays: dict[str, float] | None = None,
        overrides: dict[str, dict[str, str]] | None = None,
    ) -> None:
        self.fail = set(fail)
        self.delays = delays or {}
        self.overrides = overrides or {}
        self.calls: list[PhaseParams] = []
        self.active = 0
        self.max_active = 0

    async def execute(
        self, project_id: str, accumulated_artifacts: dict[str, str], params: PhaseParams
    ) -> dict[str, str]:
        self.calls.append(params)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delays.get(params.phase, 0))
        finally:
            self.active -= 1
        if params.phase in self.fail:
            raise RuntimeError(f"{params.phase} agent crashed")
        if params.phase in self.overrides:
            return dict(self.overrides[params.phase])
        return {name: _content(name) for name in params.required_artifacts}

    def phases(self) -> list[str]:
        return [params.phase for params in self.calls]


class GatedExecutor(FakeExecutor):
    """Blocks inside ``execute`` until ``release`` is set."""

    started: asyncio.Event
    release: asyncio.Event

    async def execute(
        self, project_id: str, accumulated_artifacts: dict[str, str], params: PhaseParams
    ) -> dict[str, str]:
        self.started.set()
        await self.release.wait()
        return await super().execute(project_id, accumulated_artifacts, params)


class ScriptedReviewer(CriticReviewer):
    def __init__(self, *replies: str) -> None:
        self.replies = list(replies)
        self.calls = 0

    async def review(self, prompt: str, persona: CriticPersona) -> str:
        self.calls += 1
        return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]


class FixedResolver(AssumptionResolver):
    async def resolve(self, questions, context):
        return {question.id: (f"assume {question.id}", "sensible default") for question in questions}


def _engine(
    tmp_path: Path,
    executor: AgentExecutor | None = None,
    *,
    checker: CheckerPattern | None = None,
    config: EngineConfig | None = None,
    resolver: AssumptionResolver | None = None,
    events: list[dict[str, Any]] | None = None,
) -> OrchestrationEngine:
    registry = default_registry()
    executor = executor or FakeExecutor()
    return OrchestrationEngine(
        registry,
        StateStore(tmp_path),
        {spec.owner: executor for spec in registry.phases},
        checker=checker,
        config=config,
        resolver=resolver,
        event_hook=events.append if events is not None else None,
    )


def _critic(phase: str, *replies: str, max_regenerations: int = 2, escalate: bool = True) -> CheckerPattern:
    return CheckerPattern(
        ScriptedReviewer(*replies),
        phase_configs={phase: CriticPhaseConfig("qa_lead", max_regenerations, escalate)},
    )


def _run(coro):
    return asyncio.run(coro)


def _project_at(engine: OrchestrationEngine, phase: str):
    """A project whose earlier phases are completed with their artifacts stored."""
    project = engine.create_project("shop")
    names = engine.registry.names
    for earlier in names[: names.index(phase)]:
        spec = engine.registry.get(earlier)
        engine.artifacts.save_many("shop", earlier, {name: _content(name) for name in spec.required_artifacts})
        project.phases_completed.append(earlier)
    if "STACK_SELECTION" in project.phases_completed:
        engine.approve_gate(project, "stack_approved", "cto")
    project.current_phase = phase
    engine.save_project(project)
    return project


def test_create_load_and_list_projects(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    project = engine.create_project("shop", "Shop", context={"scale_tier": "startup"})

    assert project.current_phase == "ANALYSIS"
    assert project.approvals == {
        "stack_approved": "pending",
        "prd_approved": "pending",
        "architecture_approved": "pending",
        "handoff_acknowledged": "pending",
    }
    loaded = _engine(tmp_path).load_project("shop")
    assert loaded.name == "Shop"
    assert loaded.context == {"scale_tier": "startup"}
    assert [item.project_id for item in engine.list_projects()] == ["shop"]

    with pytest.raises(ProjectError, match="already exists"):
        engine.create_project("shop")
    with pytest.raises(ProjectError, match="Invalid project id"):
        engine.create_project("Bad Slug")
    with pytest.raises(ProjectError, match="Unknown project"):
        engine.load_project("nope")


def test_run_phase_saves_artifacts_and_carries_warnings(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    executor = FakeExecutor(
        overrides={"ANALYSIS": {"constitution.md": "no frontmatter", "project-brief.md": _content("b")}}
    )
    engine = _engine(tmp_path, executor, events=events)
    project = engine.create_project("shop", "Shop")

    result = _run(engine.run_phase_agent(project))

    assert result.success is True
    assert result.status == "completed"
    assert result.outcome is not None and result.outcome.state == "warnings_only"
    assert [issue.message for issue in project.warnings] == ["Missing frontmatter in constitution.md"]
    assert engine.artifacts.current("shop", "ANALYSIS")["constitution.md"] == "no frontmatter"
    assert engine.load_project("shop").warnings == project.warnings
    assert executor.calls[0].instructions == "Generate the ANALYSIS artifacts for Shop."
    assert [event["event"] for event in events][-2:] == ["phase_started", "phase_completed"]
    assert engine.status(project)["total_warnings"] == 1


def test_inline_validation_failure_is_classified(tmp_path: Path) -> None:
    executor = FakeExecutor(overrides={"ANALYSIS": {"constitution.md": _content("c")}})
    engine = _engine(tmp_path, executor)
    project = engine.create_project("shop")

    result = _run(engine.run_phase_agent(project))

    assert result.success is False
    assert result.error == "Inline validation failed: Missing required artifact: project-brief.md"
    assert result.classification is not None
    assert result.classification.kind == "format_validation_error"
    assert result.remediation is not None and result.remediation.agent_to_rerun == "analyst"
    assert engine.artifacts.current("shop", "ANALYSIS") == {}


def test_unknown_phase_and_missing_executor(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    project = engine.create_project("shop")

    with pytest.raises(PhaseRegistryError, match="Unknown phase"):
        _run(engine.run_phase_agent(project, "NOPE"))

    bare = OrchestrationEngine(default_registry(), StateStore(tmp_path / "bare"), {})
    other = bare.create_project("shop")
    result = _run(bare.run_phase_agent(other))
    assert result.error == "No agent executor registered for owner 'analyst'"


def test_parallel_group_runs_concurrently_in_declared_order(tmp_path: Path) -> None:
    executor = FakeExecutor(delays={"SPEC_DESIGN_TOKENS": 0.05, "DEPENDENCIES": 0.01})
    engine = _engine(tmp_path, executor)
    project = _project_at(engine, "SPEC_DESIGN_TOKENS")

    results = _run(engine.execute_parallel_group(project, "design_and_dependencies"))

    assert [result.phase for result in results] == ["SPEC_DESIGN_TOKENS", "DEPENDENCIES"]
    assert all(result.success for result in results)
    assert executor.max_active == 2
    assert engine.artifacts.current("shop", "DEPENDENCIES") == {"DEPENDENCIES.md": _content("DEPENDENCIES.md")}


def test_parallel_group_reports_each_failure(tmp_path: Path) -> None:
    engine = _engine(tmp_path, FakeExecutor(fail=("DEPENDENCIES",)))
    project = _project_at(engine, "SPEC_DESIGN_TOKENS")

    results = _run(engine.execute_parallel_group(project, "design_and_dependencies"))

    assert [result.success for result in results] == [True, False]
    assert results[1].error == "DEPENDENCIES agent crashed"
    assert results[1].classification is not None
    assert results[1].remediation is not None


def test_invalid_group_is_rejected_before_any_agent_runs(tmp_path: Path) -> None:
    executor = FakeExecutor()
    engine = _engine(tmp_path, executor)
    project = engine.create_project("shop")

    with pytest.raises(PhaseRegistryError, match="Invalid phases in parallel group adhoc: NOPE"):
        _run(engine.execute_parallel_group(project, ParallelGroup("adhoc", ("SPEC_PM", "NOPE"))))
    with pytest.raises(PhaseRegistryError, match="Unknown phase group"):
        _run(engine.execute_parallel_group(project, "missing_group"))
    assert executor.calls == []


def test_regeneration_limit_escalates_and_blocks_advance(tmp_path: Path) -> None:
    executor = FakeExecutor()
    checker = _critic("ANALYSIS", MEDIUM, max_regenerations=1)
    engine = _engine(tmp_path, executor, checker=checker)
    project = engine.create_project("shop", "Shop")

    result = _run(engine.run_phase_agent(project))

    assert result.status == "escalated"
    assert result.success is False
    assert result.regenerations == 1
    assert result.error == "Regeneration limit (1) reached: Found 1 medium issue(s) to address"
    assert len(executor.calls) == 2
    retry = executor.calls[1]
    assert retry.attempt == 1
    assert retry.feedback is not None
    assert retry.feedback.startswith("Generate the ANALYSIS artifacts for Shop.")
    assert "CRITIC REVIEW FEEDBACK - MUST ADDRESS" in retry.feedback
    assert "ANALYSIS" in project.escalations

    blocked = engine.advance(project)
    assert blocked.success is False
    assert blocked.reason == "Open escalation for ANALYSIS"

    assert engine.resolve_escalation(project, "ANALYSIS") is True
    assert engine.resolve_escalation(project, "ANALYSIS") is False
    assert engine.advance(project).current_phase == "STACK_SELECTION"


def test_regeneration_then_approval(tmp_path: Path) -> None:
    executor = FakeExecutor()
    engine = _engine(tmp_path, executor, checker=_critic("ANALYSIS", MEDIUM, CLEAN))
    project = engine.create_project("shop")

    result = _run(engine.run_phase_agent(project))

    assert result.success is True
    assert result.regenerations == 1
    assert result.review is not None and result.review.status == "approved"
    assert len(engine.artifacts.versions("shop", "ANALYSIS", "constitution.md")) == 2


def test_critical_finding_regenerates_when_escalation_is_off(tmp_path: Path) -> None:
    executor = FakeExecutor()
    engine = _engine(tmp_path, executor, checker=_critic("ANALYSIS", CRITICAL, CLEAN, escalate=False))
    project = engine.create_project("shop")

    result = _run(engine.run_phase_agent(project))

    assert result.success is True
    assert result.regenerations == 1
    assert len(executor.calls) == 2
    assert project.escalations == {}


def test_critical_finding_past_the_cap_still_blocks_advance(tmp_path: Path) -> None:
    engine = _engine(tmp_path, checker=CheckerPattern(ScriptedReviewer(CRITICAL)))
    project = _project_at(engine, "SPEC_PM")

    result = _run(engine.run_phase_agent(project))

    assert result.status == "escalated"
    assert result.regenerations == 2
    assert result.review is not None and result.review.critic == "qa_lead"
    assert "SPEC_PM" in project.escalations
    assert engine.load_project("shop").escalations == project.escalations

    refused = engine.advance(project)
    assert refused.success is False
    assert refused.reason == "Open escalation for SPEC_PM"


def test_gates_of_indirect_dependencies_block_before_any_agent_runs(tmp_path: Path) -> None:
    executor = FakeExecutor()
    engine = _engine(tmp_path, executor)
    project = engine.create_project("shop")

    direct = _run(engine.run_phase_agent(project, "SPEC_ARCHITECT"))
    group = _run(engine.execute_parallel_group(project, "design_and_dependencies"))

    assert direct.error == "Blocking gate(s) not satisfied: stack_approved"
    assert [result.error for result in group] == [
        "Dependencies not completed: ANALYSIS",
        "Blocking gate(s) not satisfied: stack_approved",
    ]
    assert executor.calls == []
    assert engine.artifacts.current("shop", "SPEC_DESIGN_TOKENS") == {}


def test_dependency_without_artifacts_is_not_completed(tmp_path: Path) -> None:
    executor = FakeExecutor()
    engine = _engine(tmp_path, executor)
    project = engine.create_project("shop")
    project.phases_completed = ["ANALYSIS"]
    project.current_phase = "STACK_SELECTION"

    result = _run(engine.run_phase_agent(project))

    assert result.error == "Dependencies not completed: ANALYSIS (missing constitution.md, project-brief.md)"
    assert executor.calls == []

    lenient = _engine(tmp_path / "lenient", executor, config=EngineConfig(require_artifacts_on_advance=False))
    other = lenient.create_project("shop")
    other.phases_completed = ["ANALYSIS"]
    other.current_phase = "STACK_SELECTION"

    assert _run(lenient.run_phase_agent(other)).success is True


def test_blocking_gate_controls_progression(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    project = engine.create_project("shop")

    missing = engine.advance(project)
    assert missing.reason == "ANALYSIS is missing artifact(s): constitution.md, project-brief.md"

    assert _run(engine.run_phase_agent(project)).success
    assert engine.advance(project).success
    assert _run(engine.run_phase_agent(project)).success

    blocked = engine.advance(project)
    assert blocked.success is False
    assert blocked.reason == "Blocking gate stack_approved is pending"
    assert project.current_phase == "STACK_SELECTION"

    downstream = _run(engine.run_phase_agent(project, "SPEC_PM"))
    assert downstream.error == "Blocking gate(s) not satisfied: stack_approved"

    record = engine.approve_gate(project, "stack_approved", "cto", notes="ok")
    assert record.status == "approved"
    assert project.approvals["stack_approved"] == "approved"

    advanced = engine.advance(project)
    assert advanced.success is True
    assert advanced.current_phase == "SPEC_PM"
    assert advanced.phases_completed == ["ANALYSIS", "STACK_SELECTION"]
    assert engine.load_project("shop").current_phase == "SPEC_PM"
    assert any(item["topic"] == "advance" for item in engine.state.get_decisions())


def test_rejected_gate_keeps_project_in_place(tmp_path: Path) -> None:
    engine = _engine(tmp_path, config=EngineConfig(require_artifacts_on_advance=False))
    project = engine.create_project("shop")
    engine.advance(project)

    engine.reject_gate(project, "stack_approved", "cto", "too costly")

    assert engine.advance(project).reason == "Blocking gate stack_approved is rejected"
    assert project.approvals["stack_approved"] == "rejected"


def test_final_phase_cannot_advance(tmp_path: Path) -> None:
    engine = _engine(tmp_path, config=EngineConfig(require_artifacts_on_advance=False))
    project = engine.create_project("shop")
    project.current_phase = "DONE"

    assert engine.advance(project).reason == "DONE is the final phase"


def test_interactive_clarification_blocks_analysis(tmp_path: Path) -> None:
    executor = FakeExecutor()
    engine = _engine(tmp_path, executor, resolver=FixedResolver())
    project = engine.create_project("shop")
    add_questions(project.clarification, [ClarificationQuestion("q1", "scope", "Guest checkout?")])
    engine.save_project(project)

    result = _run(engine.run_phase_agent(project))

    assert result.error == "Unresolved clarification questions: q1"
    assert executor.calls == []


def test_hybrid_clarification_is_auto_resolved(tmp_path: Path) -> None:
    executor = FakeExecutor()
    engine = _engine(tmp_path, executor, resolver=FixedResolver())
    project = engine.create_project("shop", clarification_mode="hybrid")
    add_questions(project.clarification, [ClarificationQuestion("q1", "scope", "Guest checkout?")])

    result = _run(engine.run_phase_agent(project))

    assert result.success is True
    question = engine.load_project("shop").clarification.question("q1")
    assert question.resolved_by == "ai"
    assert question.ai_assumption == "assume q1"


def test_revert_snapshots_and_resets_gates(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    engine = _engine(tmp_path, events=events)
    project = engine.create_project("shop")
    _run(engine.run_phase_agent(project))
    engine.advance(project)
    _run(engine.run_phase_agent(project))
    engine.approve_gate(project, "stack_approved", "cto")
    engine.advance(project)
    _run(engine.run_phase_agent(project))

    preview = engine.preview_revert(project, "STACK_SELECTION")
    assert isinstance(preview, RollbackPreview)
    assert preview.phases_to_remove == ["STACK_SELECTION", "SPEC_PM"]

    refused = _run(engine.revert_to_phase(project, "STACK_SELECTION", confirm=False))
    assert refused.success is False
    assert project.phases_completed == ["ANALYSIS", "STACK_SELECTION"]

    result = _run(engine.revert_to_phase(project, "STACK_SELECTION", confirm=True))

    assert result.success is True
    assert result.commit_id == preview.commit_id
    assert project.phases_completed == ["ANALYSIS"]
    assert project.current_phase == "STACK_SELECTION"
    assert project.approvals["stack_approved"] == "pending"
    assert engine.approvals.check_gate_status("shop", "stack_approved") == "pending"
    assert engine.artifacts.current("shop", "SPEC_PM") == {}
    assert engine.load_project("shop").phases_completed == ["ANALYSIS"]
    assert events[-1]["event"] == "phase_reverted"


def test_revert_waits_for_running_phases(tmp_path: Path) -> None:
    executor = GatedExecutor()
    engine = _engine(tmp_path, executor, config=EngineConfig(require_artifacts_on_advance=False))
    project = engine.create_project("shop")
    engine.advance(project)

    async def _scenario():
        executor.started = asyncio.Event()
        executor.release = asyncio.Event()
        task = asyncio.create_task(engine.run_phase_agent(project))
        await executor.started.wait()
        in_flight = engine.status(project)["in_flight"]
        refused = await engine.revert_to_phase(project, "ANALYSIS", confirm=True)
        executor.release.set()
        finished = await task
        return in_flight, refused, finished

    in_flight, refused, finished = _run(_scenario())

    assert in_flight == ["STACK_SELECTION"]
    assert refused.success is False
    assert refused.error == "Phase(s) STACK_SELECTION still running; retry once they finish"
    assert finished.success is True
    assert _run(engine.revert_to_phase(project, "ANALYSIS", confirm=True)).success is True


def test_workflow_halts_at_blocking_gate_then_completes(tmp_path: Path) -> None:
    executor = FakeExecutor()
    events: list[dict[str, Any]] = []
    engine = _engine(tmp_path, executor, events=events)
    project = engine.create_project("shop")

    first = _run(engine.execute_workflow(project))

    assert first.success is True
    assert first.phases_executed == ["ANALYSIS", "STACK_SELECTION"]
    assert first.halted_reason == "Blocking gate stack_approved is pending"
    assert project.current_phase == "STACK_SELECTION"

    engine.approve_gate(project, "stack_approved", "cto")
    second = _run(engine.execute_workflow(project))

    assert second.success is True
    assert second.halted_reason == ""
    assert second.fallback_used is False
    assert second.phases_executed[-1] == "DONE"
    assert project.current_phase == "DONE"
    groups = {group.name: group for group in second.groups_executed}
    assert groups["design_and_dependencies"].type == "parallel"
    assert groups["design_and_dependencies"].phases == ("SPEC_DESIGN_TOKENS", "DEPENDENCIES")
    assert second.sequential_duration_ms >= 0
    assert events[-1]["event"] == "workflow_finished"


def test_workflow_falls_back_to_sequential(tmp_path: Path, monkeypatch) -> None:
    executor = FakeExecutor()
    engine = _engine(tmp_path, executor)
    project = _project_at(engine, "SPEC_DESIGN_TOKENS")

    async def _broken(*args, **kwargs):
        raise RuntimeError("event loop exhausted")

    monkeypatch.setattr(engine, "execute_parallel_group", _broken)

    result = _run(engine.execute_workflow(project))

    assert result.success is True
    assert result.fallback_used is True
    assert executor.phases()[:2] == ["SPEC_DESIGN_TOKENS", "DEPENDENCIES"]
    assert executor.max_active == 1


def test_workflow_without_fallback_halts(tmp_path: Path, monkeypatch) -> None:
    engine = _engine(tmp_path)
    project = _project_at(engine, "SPEC_DESIGN_TOKENS")

    async def _broken(*args, **kwargs):
        raise RuntimeError("event loop exhausted")

    monkeypatch.setattr(engine, "execute_parallel_group", _broken)

    result = _run(engine.execute_workflow(project, fallback_to_sequential=False))

    assert result.success is False
    assert result.errors == ["design_and_dependencies: event loop exhausted"]
    assert result.halted_reason == "Parallel execution of design_and_dependencies failed"


def test_sequential_workflow_runs_group_phases_one_by_one(tmp_path: Path) -> None:
    executor = FakeExecutor(delays={"SPEC_DESIGN_TOKENS": 0.01, "DEPENDENCIES": 0.01})
    engine = _engine(tmp_path, executor)
    project = _project_at(engine, "SPEC_DESIGN_TOKENS")

    result = _run(engine.execute_workflow(project, enable_parallel=False))

    assert result.success is True
    assert executor.max_active == 1
    assert "DEPENDENCIES" in result.phases_executed


def test_workflow_stops_at_first_failure(tmp_path: Path) -> None:
    executor = FakeExecutor(fail=("STACK_SELECTION",))
    engine = _engine(tmp_path, executor)
    project = engine.create_project("shop")

    result = _run(engine.execute_workflow(project))

    assert result.success is False
    assert result.phases_executed == ["ANALYSIS"]
    assert result.errors == ["STACK_SELECTION: STACK_SELECTION agent crashed"]
    assert result.halted_reason == "Step STACK_SELECTION did not complete"


def test_time_saved_metrics() -> None:
    result = WorkflowResult("shop", sequential_duration_ms=300.0, parallel_duration_ms=120.0)

    assert result.time_saved_ms == 180.0
    assert result.time_saved_percent == 60.0
    assert WorkflowResult("shop").time_saved_percent == 0.0


def test_failing_event_hook_does_not_break_execution(tmp_path: Path) -> None:
    registry = default_registry()
    executor = FakeExecutor()

    def _hook(event: dict[str, Any]) -> None:
        raise RuntimeError("sink offline")

    engine = OrchestrationEngine(
        registry,
        StateStore(tmp_path),
        {spec.owner: executor for spec in registry.phases},
        event_hook=_hook,
    )
    project = engine.create_project("shop")

    assert _run(engine.run_phase_agent(project)).success is True


def test_remediate_uses_registry_owner(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    classification, strategy = engine.remediate("DEPENDENCIES", "malformed lockfile section")

    assert classification.kind == "format_validation_error"
    assert strategy.agent_to_rerun == "devops"
