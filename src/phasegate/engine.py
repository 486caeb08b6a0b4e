from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Literal
from uuid import uuid4

from phasegate.agents.base import AgentExecutor, PhaseParams
from phasegate.approval import ApprovalGateRecord, ApprovalGateService
from phasegate.checker import (
    CheckerPattern,
    CheckerResult,
    build_regeneration_prompt,
    has_critical_issues,
)
from phasegate.clarification import (
    AssumptionResolver,
    ClarificationState,
    auto_resolve,
    readiness,
    set_mode,
)
from phasegate.config import EngineConfig
from phasegate.registry import ParallelGroup, PhaseRegistry, PhaseRegistryError, PhaseSpec
from phasegate.remediation import (
    FailureClassification,
    RemediationStrategy,
    classify_failure,
    get_remediation_strategy,
)
from phasegate.rollback import RollbackCheck, RollbackPreview, RollbackResult, RollbackService
from phasegate.state.artifacts import ArtifactStore
from phasegate.state.snapshots import SnapshotStore
from phasegate.state.store import StateStore, utcnow_iso
from phasegate.validation import (
    InlineValidationResult,
    InlineValidator,
    PhaseOutcome,
    ValidationIssue,
    determine_phase_outcome,
)

logger = logging.getLogger(__name__)

PhaseStatus = Literal["completed", "failed", "escalated"]
EngineEventHook = Callable[[dict[str, Any]], None]
PROJECT_SLUG = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


class ProjectError(ValueError):
    """Raised for malformed, duplicate or unknown project ids."""


@dataclass(slots=True)
class Project:
    project_id: str
    name: str
    current_phase: str
    phases_completed: list[str] = field(default_factory=list)
    approvals: dict[str, str] = field(default_factory=dict)
    clarification: ClarificationState = field(default_factory=ClarificationState)
    warnings: list[ValidationIssue] = field(default_factory=list)
    escalations: dict[str, str] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "name": self.name,
            "current_phase": self.current_phase,
            "phases_completed": list(self.phases_completed),
            "approvals": dict(self.approvals),
            "clarification": self.clarification.to_dict(),
            "warnings": [issue.to_dict() for issue in self.warnings],
            "escalations": dict(self.escalations),
            "context": dict(self.context),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Project:
        return cls(
            project_id=str(payload["project_id"]),
            name=str(payload.get("name") or payload["project_id"]),
            current_phase=str(payload["current_phase"]),
            phases_completed=[str(item) for item in payload.get("phases_completed", [])],
            approvals={str(k): str(v) for k, v in (payload.get("approvals") or {}).items()},
            clarification=ClarificationState.from_dict(payload.get("clarification")),
            warnings=[
                ValidationIssue.from_dict(item)
                for item in payload.get("warnings", [])
                if isinstance(item, dict)
            ],
            escalations={str(k): str(v) for k, v in (payload.get("escalations") or {}).items()},
            context=dict(payload.get("context") or {}),
            created_at=str(payload.get("created_at", "")),
            updated_at=str(payload.get("updated_at", "")),
        )


@dataclass(slots=True)
class PhaseExecutionResult:
    phase: str
    success: bool
    artifacts: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    duration_ms: float = 0.0
    status: PhaseStatus = "completed"
    validation: InlineValidationResult | None = None
    outcome: PhaseOutcome | None = None
    review: CheckerResult | None = None
    regenerations: int = 0
    classification: FailureClassification | None = None
    remediation: RemediationStrategy | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "success": self.success,
            "status": self.status,
            "artifacts": sorted(self.artifacts),
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
            "validation": self.validation.to_dict() if self.validation else None,
            "outcome": self.outcome.state if self.outcome else None,
            "review": self.review.to_dict() if self.review else None,
            "regenerations": self.regenerations,
            "classification": self.classification.to_dict() if self.classification else None,
            "remediation": self.remediation.to_dict() if self.remediation else None,
        }


@dataclass(slots=True)
class AdvanceResult:
    success: bool
    previous_phase: str
    current_phase: str
    phases_completed: list[str] = field(default_factory=list)
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "previous_phase": self.previous_phase,
            "current_phase": self.current_phase,
            "phases_completed": list(self.phases_completed),
            "reason": self.reason,
        }


@dataclass(slots=True)
class GroupExecution:
    name: str
    type: str
    phases: tuple[str, ...]
    success: bool
    duration_ms: float
    results: list[PhaseExecutionResult] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowResult:
    project_id: str
    success: bool = False
    phases_executed: list[str] = field(default_factory=list)
    groups_executed: list[GroupExecution] = field(default_factory=list)
    total_duration_ms: float = 0.0
    parallel_duration_ms: float = 0.0
    sequential_duration_ms: float = 0.0
    errors: list[str] = field(default_factory=list)
    fallback_used: bool = False
    halted_reason: str = ""

    @property
    def time_saved_ms(self) -> float:
        """Wall-clock time saved against running every phase one after another."""
        return max(0.0, self.sequential_duration_ms - self.parallel_duration_ms)

    @property
    def time_saved_percent(self) -> float:
        if self.sequential_duration_ms <= 0:
            return 0.0
        return round(self.time_saved_ms / self.sequential_duration_ms * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "success": self.success,
            "phases_executed": list(self.phases_executed),
            "groups_executed": [
                {
                    "name": group.name,
                    "type": group.type,
                    "phases": list(group.phases),
                    "success": group.success,
                    "duration_ms": round(group.duration_ms, 3),
                }
                for group in self.groups_executed
            ],
            "total_duration_ms": round(self.total_duration_ms, 3),
            "parallel_duration_ms": round(self.parallel_duration_ms, 3),
            "sequential_duration_ms": round(self.sequential_duration_ms, 3),
            "time_saved_ms": round(self.time_saved_ms, 3),
            "time_saved_percent": self.time_saved_percent,
            "errors": list(self.errors),
            "fallback_used": self.fallback_used,
            "halted_reason": self.halted_reason,
        }


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class OrchestrationEngine:
    """Drives projects through the registry's phases.

    Phase execution never raises for agent, validation or review problems: they
    come back as unsuccessful ``PhaseExecutionResult`` values. Only programmer
    errors (unknown phases, malformed groups) raise.
    """

    PROJECTS_NAMESPACE = "projects"

    def __init__(
        self,
        registry: PhaseRegistry,
        state: StateStore,
        executors: dict[str, AgentExecutor],
        *,
        checker: CheckerPattern | None = None,
        validator: InlineValidator | None = None,
        approvals: ApprovalGateService | None = None,
        artifacts: ArtifactStore | None = None,
        rollback: RollbackService | None = None,
        resolver: AssumptionResolver | None = None,
        config: EngineConfig | None = None,
        event_hook: EngineEventHook | None = None,
    ) -> None:
        self.registry = registry
        self.state = state
        self.executors = dict(executors)
        self.checker = checker
        self.config = config or EngineConfig()
        self.validator = validator or InlineValidator.for_registry(registry)
        self.approvals = approvals or ApprovalGateService(registry, state)
        self.artifacts = artifacts or ArtifactStore(state)
        self.rollback = rollback or RollbackService(
            self.artifacts, SnapshotStore(state), max_depth=self.config.max_rollback_depth
        )
        self.resolver = resolver
        self.event_hook = event_hook
        self._in_flight: dict[str, set[str]] = {}

    # -- events and decisions -------------------------------------------------

    def _emit(self, event: dict[str, Any]) -> None:
        logger.debug("Engine event: %s", event)
        if self.event_hook is None:
            return
        try:
            self.event_hook(event)
        except Exception as exc:
            logger.warning("Engine event hook failed: %s", exc)

    def _record_decision(
        self, project: Project, topic: str, decided_by: str, decision: str, rationale: str
    ) -> None:
        self.state.add_decision(
            {
                "id": f"dec-{topic}-{uuid4().hex[:8]}",
                "project_id": project.project_id,
                "topic": topic,
                "decided_by": decided_by,
                "decision": decision[:4000],
                "rationale": rationale,
                "created_at": utcnow_iso(),
            }
        )

    # -- projects ---------------------------------------------------------------

    def _projects(self) -> dict[str, Any]:
        payload = self.state.get_json(self.PROJECTS_NAMESPACE, default={})
        return payload if isinstance(payload, dict) else {}

    def save_project(self, project: Project) -> None:
        project.updated_at = utcnow_iso()
        snapshot = project.to_dict()

        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {}
            data[project.project_id] = snapshot
            return data

        self.state.update_json(self.PROJECTS_NAMESPACE, _updater, default={})

    def create_project(
        self,
        slug: str,
        name: str | None = None,
        *,
        clarification_mode: str = "interactive",
        context: dict[str, Any] | None = None,
    ) -> Project:
        if not PROJECT_SLUG.match(slug):
            raise ProjectError(
                f"Invalid project id '{slug}': use lowercase letters, digits, '.', '_' or '-'"
            )
        if slug in self._projects():
            raise ProjectError(f"Project already exists: {slug}")
        clarification = ClarificationState()
        set_mode(clarification, clarification_mode)
        now = utcnow_iso()
        project = Project(
            project_id=slug,
            name=name or slug,
            current_phase=self.registry.first_phase,
            clarification=clarification,
            context=dict(context or {}),
            created_at=now,
            updated_at=now,
        )
        records = self.approvals.initialize_gates_for_project(slug)
        project.approvals = {record.gate_name: record.status for record in records}
        self.save_project(project)
        logger.info("Created project %s at %s", slug, project.current_phase)
        self._emit({"event": "project_created", "project_id": slug})
        return project

    def load_project(self, project_id: str) -> Project:
        payload = self._projects().get(project_id)
        if not isinstance(payload, dict):
            raise ProjectError(f"Unknown project: {project_id}")
        return Project.from_dict(payload)

    def list_projects(self) -> list[Project]:
        return [
            Project.from_dict(payload)
            for _, payload in sorted(self._projects().items())
            if isinstance(payload, dict)
        ]

    # -- phase execution --------------------------------------------------------

    def _failure(
        self,
        phase: str,
        error: str,
        *,
        classify: bool = False,
        **kwargs: Any,
    ) -> PhaseExecutionResult:
        result = PhaseExecutionResult(phase=phase, success=False, error=error, status="failed", **kwargs)
        if classify:
            result.classification, result.remediation = self.remediate(phase, error)
        return result

    def _blocked_dependencies(self, project: Project, spec: PhaseSpec) -> list[str]:
        blocked: list[str] = []
        for dependency in self.registry.ancestors(spec.name):
            blocked.extend(self.approvals.unsatisfied_blocking_gates(project.project_id, dependency))
        return blocked

    def _unmet_dependencies(self, project: Project, spec: PhaseSpec) -> list[str]:
        unmet: list[str] = []
        for dependency in spec.depends_on:
            if dependency not in project.phases_completed:
                unmet.append(dependency)
                continue
            if not self.config.require_artifacts_on_advance:
                continue
            missing = self.artifacts.missing(
                project.project_id, dependency, self.registry.get(dependency).required_artifacts
            )
            if missing:
                unmet.append(f"{dependency} (missing {', '.join(missing)})")
        return unmet

    async def _ensure_clarified(self, project: Project, spec: PhaseSpec) -> tuple[bool, str]:
        state = project.clarification
        if not spec.clarification or state.completed:
            return True, ""
        if state.mode != "interactive" and self.resolver is not None:
            await auto_resolve(state, self.resolver, self._review_context(project, spec.name))
            self.save_project(project)
        return readiness(state)

    def _accumulated(
        self, project: Project, seed: dict[str, str] | None
    ) -> dict[str, str]:
        accumulated = self.artifacts.accumulated(project.project_id, project.phases_completed)
        accumulated.update(seed or {})
        return accumulated

    @staticmethod
    def _review_context(project: Project, phase: str) -> dict[str, Any]:
        return {
            "project_id": project.project_id,
            "project_name": project.name,
            "phase": phase,
            **project.context,
        }

    def _params_for(self, project: Project, spec: PhaseSpec, instructions: str | None) -> PhaseParams:
        return PhaseParams(
            phase=spec.name,
            owner=spec.owner,
            required_artifacts=spec.required_artifacts,
            description=spec.description,
            instructions=instructions or f"Generate the {spec.name} artifacts for {project.name}.",
            max_retries=spec.max_retries,
            timeout_seconds=spec.timeout_seconds,
            context=dict(project.context),
        )

    async def run_phase_agent(
        self,
        project: Project,
        phase: str | None = None,
        artifacts: dict[str, str] | None = None,
        *,
        instructions: str | None = None,
    ) -> PhaseExecutionResult:
        """Run one phase end to end: agent, inline validation, storage and critic review."""
        spec = self.registry.get(phase or project.current_phase)
        in_flight = self._in_flight.setdefault(project.project_id, set())
        in_flight.add(spec.name)
        started = time.perf_counter()
        self._emit({"event": "phase_started", "project_id": project.project_id, "phase": spec.name})
        try:
            result = await self._run_phase(project, spec, artifacts, instructions)
        except Exception as exc:
            logger.exception("Unexpected failure while running %s", spec.name)
            result = self._failure(spec.name, str(exc) or exc.__class__.__name__, classify=True)
        finally:
            in_flight.discard(spec.name)
        result.duration_ms = _elapsed_ms(started)
        self._emit(
            {
                "event": f"phase_{result.status}",
                "project_id": project.project_id,
                "phase": spec.name,
                "duration_ms": round(result.duration_ms, 3),
                "regenerations": result.regenerations,
                "error": result.error,
            }
        )
        return result

    async def _run_phase(
        self,
        project: Project,
        spec: PhaseSpec,
        seed: dict[str, str] | None,
        instructions: str | None,
    ) -> PhaseExecutionResult:
        blocked = self._blocked_dependencies(project, spec)
        if blocked:
            logger.info("%s blocked by gate(s) %s", spec.name, ", ".join(blocked))
            return self._failure(
                spec.name, f"Blocking gate(s) not satisfied: {', '.join(blocked)}"
            )
        unmet = self._unmet_dependencies(project, spec)
        if unmet:
            logger.info("%s waiting on %s", spec.name, ", ".join(unmet))
            return self._failure(spec.name, f"Dependencies not completed: {', '.join(unmet)}")

        ready, reason = await self._ensure_clarified(project, spec)
        if not ready:
            return self._failure(spec.name, reason)

        executor = self.executors.get(spec.owner)
        if executor is None:
            return self._failure(
                spec.name, f"No agent executor registered for owner '{spec.owner}'"
            )

        accumulated = self._accumulated(project, seed)
        params = self._params_for(project, spec, instructions)
        critic_config = self.checker.phase_config(spec.name) if self.checker else None
        max_regenerations = critic_config.max_regenerations if critic_config else 0
        regenerations = 0

        while True:
            try:
                generated = await executor.execute(project.project_id, dict(accumulated), params)
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                logger.warning("Agent %s failed on %s: %s", spec.owner, spec.name, message)
                return self._failure(spec.name, message, classify=True, regenerations=regenerations)

            validation = self.validator.validate(spec.name, generated, project.warnings)
            outcome = determine_phase_outcome(validation)
            if not validation.can_proceed:
                message = "; ".join(issue.message for issue in validation.errors)
                return self._failure(
                    spec.name,
                    f"Inline validation failed: {message}",
                    classify=True,
                    artifacts=generated,
                    validation=validation,
                    outcome=outcome,
                    regenerations=regenerations,
                )

            project.warnings = list(validation.accumulated_warnings)
            self.artifacts.save_many(project.project_id, spec.name, generated)
            self.save_project(project)

            if self.checker is None or critic_config is None:
                return PhaseExecutionResult(
                    phase=spec.name,
                    success=True,
                    artifacts=generated,
                    validation=validation,
                    outcome=outcome,
                    regenerations=regenerations,
                )

            review = await self.checker.execute_check(
                spec.name, generated, self._review_context(project, spec.name)
            )
            if (
                review.status == "escalate"
                and not critic_config.escalate_on_critical
                and has_critical_issues(review.feedback)
            ):
                logger.info("Critical findings on %s sent back for regeneration", spec.name)
                review = replace(review, status="regenerate")
            if review.status == "approved":
                return PhaseExecutionResult(
                    phase=spec.name,
                    success=True,
                    artifacts=generated,
                    validation=validation,
                    outcome=outcome,
                    review=review,
                    regenerations=regenerations,
                )
            if review.status == "regenerate" and regenerations < max_regenerations:
                regenerations += 1
                logger.info(
                    "Regenerating %s (%d/%d): %s",
                    spec.name,
                    regenerations,
                    max_regenerations,
                    review.summary,
                )
                params = replace(
                    params,
                    feedback=build_regeneration_prompt(params.instructions, review.feedback),
                    attempt=regenerations,
                )
                continue
            if review.status == "regenerate":
                review = CheckerResult(
                    "escalate",
                    review.feedback,
                    review.confidence,
                    f"Regeneration limit ({max_regenerations}) reached: {review.summary}",
                    review.critic,
                )
            return self._escalate(project, spec, generated, validation, outcome, review, regenerations)

    def _escalate(
        self,
        project: Project,
        spec: PhaseSpec,
        generated: dict[str, str],
        validation: InlineValidationResult,
        outcome: PhaseOutcome,
        review: CheckerResult,
        regenerations: int,
    ) -> PhaseExecutionResult:
        project.escalations[spec.name] = review.summary
        self.save_project(project)
        logger.warning("Escalating %s to a human reviewer: %s", spec.name, review.summary)
        return PhaseExecutionResult(
            phase=spec.name,
            success=False,
            artifacts=generated,
            error=review.summary,
            status="escalated",
            validation=validation,
            outcome=outcome,
            review=review,
            regenerations=regenerations,
        )

    async def execute_parallel_group(
        self,
        project: Project,
        group: ParallelGroup | str,
        seed_artifacts: dict[str, str] | None = None,
    ) -> list[PhaseExecutionResult]:
        """Run every phase of ``group`` concurrently and wait for all of them.

        Phase names are checked before any agent runs. Results come back in the
        group's declared order whatever order the phases finish in.
        """
        if isinstance(group, str):
            group = self.registry.group(group)
        self.registry.validate_group(group)
        logger.info("Running group %s: %s", group.name, ", ".join(group.phases))

        settled = await asyncio.gather(
            *(self.run_phase_agent(project, phase, seed_artifacts) for phase in group.phases),
            return_exceptions=True,
        )
        results: list[PhaseExecutionResult] = []
        for phase, outcome in zip(group.phases, settled):
            if isinstance(outcome, PhaseExecutionResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                results.append(self._failure(phase, str(outcome) or outcome.__class__.__name__))
            else:
                raise outcome
        failed = [result.phase for result in results if not result.success]
        if failed:
            logger.warning("Group %s finished with failures in %s", group.name, ", ".join(failed))
        return results

    # -- gates and progression -------------------------------------------------

    def _current_step(self, project: Project) -> ParallelGroup:
        return self.registry.step_for(project.current_phase)

    def advance(self, project: Project) -> AdvanceResult:
        """Complete the current step and move to the next one when nothing blocks it."""
        step = self._current_step(project)
        previous = project.current_phase

        def _reject(reason: str) -> AdvanceResult:
            logger.info("Cannot advance %s from %s: %s", project.project_id, previous, reason)
            return AdvanceResult(False, previous, previous, list(project.phases_completed), reason)

        escalated = [phase for phase in step.phases if phase in project.escalations]
        if escalated:
            return _reject(f"Open escalation for {', '.join(escalated)}")

        for phase in step.phases:
            for gate in self.approvals.unsatisfied_blocking_gates(project.project_id, phase):
                status = self.approvals.check_gate_status(project.project_id, gate) or "pending"
                return _reject(f"Blocking gate {gate} is {status}")

        if self.config.require_artifacts_on_advance:
            for phase in step.phases:
                spec = self.registry.get(phase)
                missing = self.artifacts.missing(project.project_id, phase, spec.required_artifacts)
                if missing:
                    return _reject(f"{phase} is missing artifact(s): {', '.join(missing)}")

        next_phase = self.registry.next_phase(previous)
        if next_phase is None:
            return _reject(f"{previous} is the final phase")

        for phase in step.phases:
            if phase not in project.phases_completed:
                project.phases_completed.append(phase)
        project.current_phase = next_phase
        self.save_project(project)
        self._record_decision(
            project,
            "advance",
            "engine",
            f"{previous} -> {next_phase}",
            f"Completed step {step.name}",
        )
        self._emit(
            {
                "event": "phase_advanced",
                "project_id": project.project_id,
                "from": previous,
                "to": next_phase,
            }
        )
        logger.info("Project %s advanced from %s to %s", project.project_id, previous, next_phase)
        return AdvanceResult(True, previous, next_phase, list(project.phases_completed))

    def approve_gate(
        self,
        project: Project,
        gate_name: str,
        approved_by: str,
        *,
        score: int | None = None,
        notes: str | None = None,
    ) -> ApprovalGateRecord:
        record = self.approvals.approve_gate(
            project.project_id, gate_name, approved_by, score=score, notes=notes
        )
        project.approvals[gate_name] = record.status
        self.save_project(project)
        self._record_decision(
            project, "gate", approved_by, f"{gate_name} {record.status}", notes or ""
        )
        return record

    def reject_gate(
        self, project: Project, gate_name: str, rejected_by: str, reason: str
    ) -> ApprovalGateRecord:
        record = self.approvals.reject_gate(project.project_id, gate_name, rejected_by, reason)
        project.approvals[gate_name] = record.status
        self.save_project(project)
        self._record_decision(project, "gate", rejected_by, f"{gate_name} rejected", reason)
        return record

    def resolve_escalation(self, project: Project, phase: str, resolved_by: str = "user") -> bool:
        summary = project.escalations.pop(phase, None)
        if summary is None:
            return False
        self.save_project(project)
        self._record_decision(
            project, "escalation", resolved_by, f"Resolved escalation for {phase}", summary
        )
        logger.info("Escalation for %s on %s resolved by %s", phase, project.project_id, resolved_by)
        return True

    # -- rollback ---------------------------------------------------------------

    def preview_revert(self, project: Project, target: str) -> RollbackPreview | RollbackCheck:
        return self.rollback.get_rollback_preview(
            project.project_id, target, list(project.phases_completed), project.current_phase
        )

    async def revert_to_phase(self, project: Project, target: str, confirm: bool) -> RollbackResult:
        """Return ``project`` to ``target`` after snapshotting everything it discards."""
        running = sorted(self._in_flight.get(project.project_id, set()))
        if running:
            return RollbackResult(
                success=False,
                target_phase=target,
                phases_completed=list(project.phases_completed),
                current_phase=project.current_phase,
                error=f"Phase(s) {', '.join(running)} still running; retry once they finish",
            )
        result = self.rollback.rollback_to_phase(
            project.project_id,
            target,
            list(project.phases_completed),
            confirm=confirm,
            current_phase=project.current_phase,
        )
        if not result.success:
            return result

        project.phases_completed = list(result.phases_completed)
        project.current_phase = target
        for phase in result.removed_phases:
            project.escalations.pop(phase, None)
        for gate_name in self.approvals.reset_gates_for_phases(
            project.project_id, result.removed_phases
        ):
            project.approvals[gate_name] = "pending"
        self.save_project(project)
        self._record_decision(
            project,
            "rollback",
            "user",
            f"Reverted to {target}",
            f"Snapshot {result.snapshot_id} holds {len(result.restored_artifacts)} artifact(s)",
        )
        self._emit(
            {
                "event": "phase_reverted",
                "project_id": project.project_id,
                "target": target,
                "snapshot_id": result.snapshot_id,
            }
        )
        return result

    # -- workflow ---------------------------------------------------------------

    async def _run_sequential(
        self, project: Project, phases: tuple[str, ...]
    ) -> list[PhaseExecutionResult]:
        results: list[PhaseExecutionResult] = []
        for phase in phases:
            result = await self.run_phase_agent(project, phase)
            results.append(result)
            if not result.success:
                break
        return results

    async def execute_workflow(
        self,
        project: Project,
        enable_parallel: bool | None = None,
        fallback_to_sequential: bool | None = None,
    ) -> WorkflowResult:
        """Run steps from the current phase until a failure, a blocked gate or the end."""
        if enable_parallel is None:
            enable_parallel = self.config.enable_parallel
        if fallback_to_sequential is None:
            fallback_to_sequential = self.config.fallback_to_sequential

        outcome = WorkflowResult(project_id=project.project_id)
        started = time.perf_counter()
        while True:
            step = self._current_step(project)
            pending = tuple(phase for phase in step.phases if phase not in project.phases_completed)
            step_started = time.perf_counter()
            results: list[PhaseExecutionResult] = []
            if enable_parallel and step.type == "parallel" and len(pending) > 1:
                try:
                    results = await self.execute_parallel_group(
                        project, ParallelGroup(step.name, pending, step.type)
                    )
                except Exception as exc:
                    if not fallback_to_sequential:
                        outcome.errors.append(f"{step.name}: {exc}")
                        outcome.halted_reason = f"Parallel execution of {step.name} failed"
                        break
                    logger.warning(
                        "Parallel execution of %s failed (%s); running sequentially", step.name, exc
                    )
                    outcome.fallback_used = True
                    results = await self._run_sequential(project, pending)
            else:
                results = await self._run_sequential(project, pending)

            wall_ms = _elapsed_ms(step_started)
            succeeded = all(result.success for result in results)
            outcome.groups_executed.append(
                GroupExecution(step.name, step.type, pending, succeeded, wall_ms, results)
            )
            outcome.parallel_duration_ms += wall_ms
            outcome.sequential_duration_ms += sum(result.duration_ms for result in results)
            outcome.phases_executed.extend(result.phase for result in results if result.success)

            if not succeeded:
                outcome.errors.extend(
                    f"{result.phase}: {result.error}" for result in results if not result.success
                )
                outcome.halted_reason = f"Step {step.name} did not complete"
                break
            if self.registry.next_phase(project.current_phase) is None:
                break
            advanced = self.advance(project)
            if not advanced.success:
                outcome.halted_reason = advanced.reason
                break

        outcome.total_duration_ms = _elapsed_ms(started)
        outcome.success = not outcome.errors
        self._emit(
            {
                "event": "workflow_finished",
                "project_id": project.project_id,
                "success": outcome.success,
                "phases_executed": len(outcome.phases_executed),
                "time_saved_ms": round(outcome.time_saved_ms, 3),
            }
        )
        return outcome

    # -- diagnostics ------------------------------------------------------------

    def remediate(
        self, phase: str, message: str
    ) -> tuple[FailureClassification, RemediationStrategy]:
        classification = classify_failure(phase, message)
        strategy = get_remediation_strategy(classification.kind, phase, self.registry)
        logger.info(
            "Classified %s failure as %s (%.2f)", phase, classification.kind, classification.confidence
        )
        return classification, strategy

    def status(self, project: Project) -> dict[str, Any]:
        try:
            next_phase = self.registry.next_phase(project.current_phase)
        except PhaseRegistryError:
            next_phase = None
        return {
            **project.to_dict(),
            "next_phase": next_phase,
            "step": self._current_step(project).name,
            "gates": [record.to_dict() for record in self.approvals.get_project_gates(project.project_id)],
            "artifacts": {
                phase: sorted(self.artifacts.current(project.project_id, phase))
                for phase in self.registry.names
                if self.artifacts.current(project.project_id, phase)
            },
            "in_flight": sorted(self._in_flight.get(project.project_id, set())),
            "total_warnings": len(project.warnings),
        }
