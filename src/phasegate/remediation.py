from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal

from phasegate.registry import PhaseRegistry, PhaseRegistryError

FailureKind = Literal[
    "missing_requirement_mapping",
    "persona_mismatch",
    "api_data_model_gap",
    "structural_inconsistency",
    "format_validation_error",
    "constitutional_violation",
    "unknown",
]

PHASE_AFFINITY_BONUS = 0.05
PHASE_AFFINITY_CAP = 0.9
UNKNOWN_CONFIDENCE = 0.3


@dataclass(frozen=True, slots=True)
class FailureClassification:
    kind: FailureKind
    confidence: float
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "confidence": self.confidence, "reason": self.reason}


@dataclass(frozen=True, slots=True)
class RemediationStrategy:
    agent_to_rerun: str | None
    phase: str
    additional_instructions: str
    requires_manual_review: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_to_rerun": self.agent_to_rerun,
            "phase": self.phase,
            "additional_instructions": self.additional_instructions,
            "requires_manual_review": self.requires_manual_review,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class _Rule:
    kind: FailureKind
    patterns: tuple[re.Pattern[str], ...]
    confidence: float
    home_phases: tuple[str, ...] = ()


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


# Most specific first: the first rule with a matching pattern wins.
RULES: tuple[_Rule, ...] = (
    _Rule(
        "constitutional_violation",
        _compile(
            r"violates.*constitutional.*article",
            r"constitutional.*violation",
            r"forbidden.*by.*constitution",
            r"against.*constitutional.*principle",
        ),
        0.98,
    ),
    _Rule(
        "format_validation_error",
        _compile(
            r"invalid.*(json|yaml|markdown|syntax)",
            r"parse.*error",
            r"malformed",
            r"syntax.*error",
            r"formatting.*error",
            r"missing required artifact",
        ),
        0.95,
    ),
    _Rule(
        "missing_requirement_mapping",
        _compile(
            r"missing.*(requirement|feature|functionality)",
            r"not.*(captured|included|specified).*in.*PRD",
            r"gap.*between.*project-brief.*and.*PRD",
            r"PRD.*missing.*mentioned.*in.*project-brief",
        ),
        0.85,
        ("SPEC_PM",),
    ),
    _Rule(
        "api_data_model_gap",
        _compile(
            r"api.*references.*field.*not.*in.*data.*model",
            r"data.*model.*missing.*field.*used.*in.*api",
            r"api.*spec.*inconsistent.*with.*data.*model",
            r"field.*not.*present.*in.*data-model",
        ),
        0.85,
        ("SPEC_ARCHITECT",),
    ),
    _Rule(
        "persona_mismatch",
        _compile(
            r"not.*align.*with.*persona",
            r"persona.*mismatch",
            r"user.*stor(y|ies).*inconsistent.*with.*persona",
            r"does.*not.*match.*persona",
        ),
        0.80,
        ("SPEC_PM",),
    ),
    _Rule(
        "structural_inconsistency",
        _compile(
            r"references.*not.*defined",
            r"component.*references.*token.*not.*defined",
            r"inconsistent.*with.*architecture",
            r"violates.*dependency.*graph",
        ),
        0.75,
        ("SPEC_DESIGN_TOKENS", "SPEC_DESIGN_COMPONENTS", "SOLUTIONING"),
    ),
)


def classify_failure(phase: str, message: str) -> FailureClassification:
    for rule in RULES:
        for pattern in rule.patterns:
            if not pattern.search(message):
                continue
            confidence = rule.confidence
            reason = f"Matched {rule.kind} pattern /{pattern.pattern}/"
            if phase in rule.home_phases:
                confidence = max(confidence, min(confidence + PHASE_AFFINITY_BONUS, PHASE_AFFINITY_CAP))
                reason += f" in {phase}"
            return FailureClassification(rule.kind, round(confidence, 4), reason)
    return FailureClassification("unknown", UNKNOWN_CONFIDENCE, "No classification pattern matched")


def _heuristic_owner(phase: str) -> str:
    upper = phase.upper()
    if "DESIGN" in upper:
        return "designer"
    if "ARCHITECT" in upper or "STACK" in upper:
        return "architect"
    if "ANALYSIS" in upper:
        return "analyst"
    return "pm"


def _owner_of(phase: str, registry: PhaseRegistry | None) -> str:
    if registry is not None:
        try:
            return registry.owner_of(phase)
        except PhaseRegistryError:
            pass
    return _heuristic_owner(phase)


def get_remediation_strategy(
    kind: FailureKind, phase: str, registry: PhaseRegistry | None = None
) -> RemediationStrategy:
    if kind == "missing_requirement_mapping":
        return RemediationStrategy(
            agent_to_rerun="scrummaster",
            phase=phase,
            additional_instructions=(
                "Perform a gap analysis between project-brief.md and PRD.md. Map every "
                "requirement from the brief to a PRD section and add the missing ones."
            ),
            requires_manual_review=False,
            reason="Requirements from the project brief are not mapped into the PRD",
        )
    if kind == "persona_mismatch":
        return RemediationStrategy(
            agent_to_rerun="pm",
            phase="SPEC_PM",
            additional_instructions=(
                "Check persona consistency: every user story must name a persona from "
                "personas.md and reflect that persona's goals and constraints."
            ),
            requires_manual_review=False,
            reason="User stories do not align with the defined personas",
        )
    if kind == "api_data_model_gap":
        return RemediationStrategy(
            agent_to_rerun="architect",
            phase="SPEC_ARCHITECT",
            additional_instructions=(
                "Synchronize api-spec.json with data-model.md: every field the API "
                "references must exist in the data model with a matching type."
            ),
            requires_manual_review=False,
            reason="API specification and data model are out of sync",
        )
    if kind == "structural_inconsistency":
        upper = phase.upper()
        agent = "designer" if "DESIGN" in upper else "architect" if "ARCHITECT" in upper else "pm"
        return RemediationStrategy(
            agent_to_rerun=agent,
            phase=phase,
            additional_instructions=(
                "Resolve cross-artifact references: every referenced token, component or "
                "section must be defined in the artifact it points to."
            ),
            requires_manual_review=False,
            reason="Artifacts reference items that are not defined",
        )
    if kind == "format_validation_error":
        return RemediationStrategy(
            agent_to_rerun=_owner_of(phase, registry),
            phase=phase,
            additional_instructions=(
                "Fix formatting: emit syntactically valid JSON, YAML and Markdown and keep "
                "the required structure of each artifact."
            ),
            requires_manual_review=False,
            reason="Artifact failed a syntax or format check",
        )
    if kind == "constitutional_violation":
        return RemediationStrategy(
            agent_to_rerun=None,
            phase=phase,
            additional_instructions=(
                "A constitutional article was violated. A human must decide whether to "
                "amend the constitution or change the artifact."
            ),
            requires_manual_review=True,
            reason="Constitutional violations are never remediated automatically",
        )
    return RemediationStrategy(
        agent_to_rerun=None,
        phase=phase,
        additional_instructions="Review the failure manually; no automatic remediation applies.",
        requires_manual_review=True,
        reason="Failure could not be classified",
    )
