from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

GroupType = Literal["parallel", "sequential"]
SeverityThreshold = Literal["low", "medium", "high"]


class PhaseRegistryError(ValueError):
    """Raised when the phase registry or a phase group is malformed."""


@dataclass(frozen=True, slots=True)
class PhaseSpec:
    name: str
    owner: str
    required_artifacts: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    group: str | None = None
    description: str = ""
    clarification: bool = False
    max_retries: int | None = None
    timeout_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class ParallelGroup:
    name: str
    phases: tuple[str, ...]
    type: GroupType = "parallel"


@dataclass(frozen=True, slots=True)
class GateDefinition:
    name: str
    phase: str
    blocking: bool
    stakeholder_role: str
    description: str = ""
    auto_approve_threshold: int | None = None


@dataclass(frozen=True, slots=True)
class CriticPersona:
    name: str
    perspective: str
    expertise: tuple[str, ...]
    review_criteria: tuple[str, ...]
    severity_threshold: SeverityThreshold = "medium"


@dataclass(frozen=True, slots=True)
class CriticPhaseConfig:
    critic: str
    max_regenerations: int = 2
    escalate_on_critical: bool = True


CRITIC_PERSONAS: dict[str, CriticPersona] = {
    "skeptical_cto": CriticPersona(
        name="Skeptical CTO",
        perspective="Technical leader who has seen stack decisions go wrong",
        expertise=("Cloud architecture", "Cost optimization", "Vendor lock-in", "Scaling patterns"),
        review_criteria=(
            "Hidden cost traps not mentioned",
            "Vendor lock-in risks",
            "Scaling limitations at current scale tier",
            "Technical debt introduced",
            "Team skill mismatch",
            "Alternative stacks not fairly evaluated",
            "Cold start issues",
            "Data transfer costs underestimated",
        ),
        severity_threshold="medium",
    ),
    "qa_lead": CriticPersona(
        name="QA Lead",
        perspective="Tester who must verify every requirement is testable",
        expertise=("Test design", "Acceptance criteria", "Edge cases", "Risk-based testing"),
        review_criteria=(
            "Requirements too vague to test",
            "Missing acceptance criteria",
            "Edge cases not addressed",
            "Persona traceability gaps",
            "Untestable requirements",
            "Circular dependencies in requirements",
            "Ambiguous success criteria",
            "Missing negative test cases",
        ),
        severity_threshold="low",
    ),
    "security_auditor": CriticPersona(
        name="Security Auditor",
        perspective="Security professional who assumes worst-case scenarios",
        expertise=(
            "OWASP Top 10",
            "Authentication",
            "Authorization",
            "Data protection",
            "Penetration testing",
        ),
        review_criteria=(
            "Authentication gaps or weaknesses",
            "Authorization/permission issues",
            "Data exposure risks",
            "Rate limiting missing or inadequate",
            "SQL/NoSQL injection vectors",
            "Sensitive data in logs",
            "Missing input validation",
            "Insecure direct object references",
            "Missing security headers",
            "Crypto usage issues",
        ),
        severity_threshold="high",
    ),
    "a11y_specialist": CriticPersona(
        name="Accessibility Specialist",
        perspective="Advocate ensuring inclusive design for all users",
        expertise=(
            "WCAG 2.1 AA",
            "Screen readers",
            "Keyboard navigation",
            "Color contrast",
            "ARIA",
        ),
        review_criteria=(
            "Missing useReducedMotion for animations",
            "ARIA attributes absent or incorrect",
            "Keyboard navigation gaps",
            "Color contrast issues (WCAG AA)",
            "Focus management missing for modals",
            "Alt text missing for images",
            "Form labels absent",
            "Landmark regions not defined",
            "Error messages not announced",
            "Skip links missing",
        ),
        severity_threshold="medium",
    ),
}


@dataclass(frozen=True, slots=True)
class PhaseRegistry:
    """Ordered, immutable description of the pipeline.

    Phases are listed in execution order. Consecutive phases that share a
    ``group`` name form one step of the pipeline and may run concurrently.
    """

    phases: tuple[PhaseSpec, ...]
    gates: tuple[GateDefinition, ...] = ()
    critics: dict[str, CriticPhaseConfig] = field(default_factory=dict)
    personas: dict[str, CriticPersona] = field(default_factory=lambda: dict(CRITIC_PERSONAS))
    group_types: dict[str, GroupType] = field(default_factory=dict)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for spec in self.phases:
            if spec.name in seen:
                raise PhaseRegistryError(f"Duplicate phase name in registry: {spec.name}")
            seen.add(spec.name)
        for spec in self.phases:
            unknown = [dep for dep in spec.depends_on if dep not in seen]
            if unknown:
                raise PhaseRegistryError(
                    f"Phase {spec.name} depends on unknown phase(s): {', '.join(unknown)}"
                )
        gate_names: set[str] = set()
        for gate in self.gates:
            if gate.name in gate_names:
                raise PhaseRegistryError(f"Duplicate gate name in registry: {gate.name}")
            gate_names.add(gate.name)
            if gate.phase not in seen:
                raise PhaseRegistryError(
                    f"Gate {gate.name} references unknown phase: {gate.phase}"
                )
            threshold = gate.auto_approve_threshold
            if threshold is not None and not 0 <= threshold <= 100:
                raise PhaseRegistryError(
                    f"Gate {gate.name} auto-approve threshold must be within 0-100"
                )
        for phase, config in self.critics.items():
            if config.critic not in self.personas:
                raise PhaseRegistryError(
                    f"Critic '{config.critic}' configured for {phase} is not a known persona"
                )
        self._check_groups_contiguous()

    def _check_groups_contiguous(self) -> None:
        closed: set[str] = set()
        previous: str | None = None
        for spec in self.phases:
            if spec.group != previous and previous is not None:
                closed.add(previous)
            if spec.group is not None and spec.group in closed:
                raise PhaseRegistryError(
                    f"Phases of group {spec.group} must be declared contiguously"
                )
            previous = spec.group

    @property
    def names(self) -> list[str]:
        return [spec.name for spec in self.phases]

    @property
    def first_phase(self) -> str:
        if not self.phases:
            raise PhaseRegistryError("Phase registry is empty")
        return self.phases[0].name

    def has(self, name: str) -> bool:
        return any(spec.name == name for spec in self.phases)

    def get(self, name: str) -> PhaseSpec:
        for spec in self.phases:
            if spec.name == name:
                return spec
        raise PhaseRegistryError(f"Unknown phase: {name}")

    def ancestors(self, name: str) -> list[str]:
        """Every phase ``name`` depends on, directly or transitively, in registry order."""
        seen: set[str] = set()
        pending = list(self.get(name).depends_on)
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self.get(current).depends_on)
        return [phase for phase in self.names if phase in seen]

    def owner_of(self, name: str) -> str:
        return self.get(name).owner

    def steps(self) -> list[ParallelGroup]:
        """Return the pipeline as ordered steps; ungrouped phases are single sequential steps."""
        steps: list[ParallelGroup] = []
        for spec in self.phases:
            if spec.group is not None and steps and steps[-1].name == spec.group:
                last = steps[-1]
                steps[-1] = ParallelGroup(last.name, (*last.phases, spec.name), last.type)
                continue
            if spec.group is None:
                steps.append(ParallelGroup(spec.name, (spec.name,), "sequential"))
            else:
                group_type = self.group_types.get(spec.group, "parallel")
                steps.append(ParallelGroup(spec.group, (spec.name,), group_type))
        return steps

    def group(self, name: str) -> ParallelGroup:
        for step in self.steps():
            if step.name == name and (len(step.phases) > 1 or step.type == "parallel"):
                return step
        raise PhaseRegistryError(f"Unknown phase group: {name}")

    def step_for(self, phase: str) -> ParallelGroup:
        self.get(phase)
        for step in self.steps():
            if phase in step.phases:
                return step
        raise PhaseRegistryError(f"Unknown phase: {phase}")

    def next_phase(self, phase: str) -> str | None:
        steps = self.steps()
        for index, step in enumerate(steps):
            if phase in step.phases:
                if index + 1 < len(steps):
                    return steps[index + 1].phases[0]
                return None
        raise PhaseRegistryError(f"Unknown phase: {phase}")

    def validate_group(self, group: ParallelGroup) -> None:
        if not group.phases:
            raise PhaseRegistryError(f"Parallel group {group.name} has no phases")
        invalid = [phase for phase in group.phases if not self.has(phase)]
        if invalid:
            raise PhaseRegistryError(
                f"Invalid phases in parallel group {group.name}: {', '.join(invalid)}"
            )
        duplicates = sorted({phase for phase in group.phases if group.phases.count(phase) > 1})
        if duplicates:
            raise PhaseRegistryError(
                f"Duplicate phases in parallel group {group.name}: {', '.join(duplicates)}"
            )

    def gate(self, name: str) -> GateDefinition | None:
        for gate in self.gates:
            if gate.name == name:
                return gate
        return None

    def gates_for_phase(self, phase: str) -> list[GateDefinition]:
        return [gate for gate in self.gates if gate.phase == phase]

    def critic_config(self, phase: str) -> CriticPhaseConfig | None:
        return self.critics.get(phase)


def _phase(
    name: str,
    owner: str,
    outputs: tuple[str, ...],
    depends_on: tuple[str, ...] = (),
    **kwargs: Any,
) -> PhaseSpec:
    return PhaseSpec(name=name, owner=owner, required_artifacts=outputs, depends_on=depends_on, **kwargs)


DEFAULT_GATES: tuple[GateDefinition, ...] = (
    GateDefinition(
        name="stack_approved",
        phase="STACK_SELECTION",
        blocking=True,
        stakeholder_role="Technical Lead / CTO",
        description="Technology decisions impact all downstream work",
    ),
    GateDefinition(
        name="prd_approved",
        phase="SPEC_PM",
        blocking=False,
        stakeholder_role="Product Owner / PM",
        description="Requirements can be refined during development",
    ),
    GateDefinition(
        name="architecture_approved",
        phase="SPEC_ARCHITECT",
        blocking=False,
        stakeholder_role="Technical Lead / Architect",
        description="Architecture can be refined as implementation proceeds",
        auto_approve_threshold=95,
    ),
    GateDefinition(
        name="handoff_acknowledged",
        phase="DONE",
        blocking=False,
        stakeholder_role="Development Team",
        description="Final handoff confirmation",
    ),
)

DEFAULT_CRITICS: dict[str, CriticPhaseConfig] = {
    "STACK_SELECTION": CriticPhaseConfig("skeptical_cto", 2, True),
    "SPEC_PM": CriticPhaseConfig("qa_lead", 2, False),
    "SPEC_ARCHITECT": CriticPhaseConfig("security_auditor", 1, True),
    "FRONTEND_BUILD": CriticPhaseConfig("a11y_specialist", 2, False),
}


def default_registry() -> PhaseRegistry:
    phases = (
        _phase(
            "ANALYSIS",
            "analyst",
            ("constitution.md", "project-brief.md"),
            description="Capture the project brief, constitution and personas",
            clarification=True,
        ),
        _phase(
            "STACK_SELECTION",
            "architect",
            ("stack-decision.md", "stack.json"),
            ("ANALYSIS",),
            description="Select and justify the technology stack",
        ),
        _phase(
            "SPEC_PM",
            "pm",
            ("PRD.md",),
            ("ANALYSIS", "STACK_SELECTION"),
            description="Write the product requirements document",
        ),
        _phase(
            "SPEC_ARCHITECT",
            "architect",
            ("data-model.md", "api-spec.json"),
            ("SPEC_PM",),
            description="Define the data model and API surface",
        ),
        _phase(
            "SPEC_DESIGN_TOKENS",
            "designer",
            ("design-tokens.md",),
            ("ANALYSIS",),
            group="design_and_dependencies",
            description="Define the design token system",
        ),
        _phase(
            "DEPENDENCIES",
            "devops",
            ("DEPENDENCIES.md",),
            ("SPEC_ARCHITECT",),
            group="design_and_dependencies",
            description="Pin runtime and build dependencies",
        ),
        _phase(
            "SPEC_DESIGN_COMPONENTS",
            "designer",
            ("component-inventory.md",),
            ("SPEC_DESIGN_TOKENS",),
            description="Inventory components and user journeys",
        ),
        _phase(
            "FRONTEND_BUILD",
            "frontend_developer",
            (),
            ("SPEC_DESIGN_COMPONENTS",),
            description="Scaffold the frontend against the design system",
        ),
        _phase(
            "SOLUTIONING",
            "scrummaster",
            ("architecture.md", "epics.md", "tasks.md"),
            ("SPEC_ARCHITECT", "DEPENDENCIES"),
            description="Break the solution into epics and tasks",
        ),
        _phase(
            "VALIDATE",
            "validator",
            ("validation-report.md",),
            ("SOLUTIONING",),
            description="Cross-check artifacts for consistency and coverage",
        ),
        _phase("DONE", "pm", (), ("VALIDATE",), description="Hand off to the development team"),
    )
    return PhaseRegistry(
        phases=phases,
        gates=DEFAULT_GATES,
        critics=dict(DEFAULT_CRITICS),
    )


def _tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


def registry_from_dict(data: dict[str, Any]) -> PhaseRegistry:
    raw_phases = data.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise PhaseRegistryError("Registry file must declare at least one [[phases]] entry")

    phases: list[PhaseSpec] = []
    for item in raw_phases:
        if not isinstance(item, dict) or not item.get("name") or not item.get("owner"):
            raise PhaseRegistryError("Every phase needs a name and an owner")
        phases.append(
            PhaseSpec(
                name=str(item["name"]),
                owner=str(item["owner"]),
                required_artifacts=_tuple(item.get("required_artifacts")),
                depends_on=_tuple(item.get("depends_on")),
                group=item.get("group"),
                description=str(item.get("description", "")),
                clarification=bool(item.get("clarification", False)),
                max_retries=item.get("max_retries"),
                timeout_seconds=item.get("timeout_seconds"),
            )
        )

    gates = tuple(
        GateDefinition(
            name=str(item["name"]),
            phase=str(item["phase"]),
            blocking=bool(item.get("blocking", False)),
            stakeholder_role=str(item.get("stakeholder_role", "")),
            description=str(item.get("description", "")),
            auto_approve_threshold=item.get("auto_approve_threshold"),
        )
        for item in data.get("gates", [])
    )

    personas = dict(CRITIC_PERSONAS)
    for key, item in data.get("personas", {}).items():
        personas[key] = CriticPersona(
            name=str(item.get("name", key)),
            perspective=str(item.get("perspective", "")),
            expertise=_tuple(item.get("expertise")),
            review_criteria=_tuple(item.get("review_criteria")),
            severity_threshold=item.get("severity_threshold", "medium"),
        )

    critics = {
        phase: CriticPhaseConfig(
            critic=str(item["critic"]),
            max_regenerations=int(item.get("max_regenerations", 2)),
            escalate_on_critical=bool(item.get("escalate_on_critical", True)),
        )
        for phase, item in data.get("critics", {}).items()
    }
    group_types = {
        str(item["name"]): item.get("type", "parallel") for item in data.get("groups", [])
    }
    return PhaseRegistry(
        phases=tuple(phases),
        gates=gates,
        critics=critics,
        personas=personas,
        group_types=group_types,
    )


def load_registry(path: Path | None) -> PhaseRegistry:
    if path is None or not path.exists():
        return default_registry()
    return registry_from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
