from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from phasegate.registry import PhaseRegistry

IssueSeverity = Literal["error", "warning"]
Validator = Callable[[dict[str, str], str], list["ValidationIssue"]]

CLARIFICATION_MARKER = re.compile(r"\[CLARIFICATION NEEDED:([^\]]+)\]", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    severity: IssueSeverity
    message: str
    phase: str
    artifact: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "message": self.message,
            "phase": self.phase,
            "artifact": self.artifact,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ValidationIssue:
        return cls(
            severity=payload.get("severity", "warning"),
            message=str(payload.get("message", "")),
            phase=str(payload.get("phase", "")),
            artifact=payload.get("artifact"),
        )


@dataclass(slots=True)
class InlineValidationResult:
    passed: bool
    can_proceed: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    accumulated_warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def total_warnings(self) -> int:
        return len(self.accumulated_warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "can_proceed": self.can_proceed,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "total_warnings": self.total_warnings,
        }


def require_artifacts(*names: str) -> Validator:
    def _validator(artifacts: dict[str, str], phase: str) -> list[ValidationIssue]:
        return [
            ValidationIssue("error", f"Missing required artifact: {name}", phase, name)
            for name in names
            if not artifacts.get(name, "").strip()
        ]

    return _validator


def markdown_frontmatter(artifacts: dict[str, str], phase: str) -> list[ValidationIssue]:
    return [
        ValidationIssue("warning", f"Missing frontmatter in {name}", phase, name)
        for name, content in artifacts.items()
        if name.endswith(".md") and not content.startswith("---")
    ]


def unresolved_clarifications(artifacts: dict[str, str], phase: str) -> list[ValidationIssue]:
    issues = []
    for name, content in artifacts.items():
        found = CLARIFICATION_MARKER.findall(content)
        if found:
            issues.append(
                ValidationIssue(
                    "warning",
                    f"Unresolved clarification in {name}: {len(found)} found",
                    phase,
                    name,
                )
            )
    return issues


def valid_json(*names: str) -> Validator:
    """Error for each named artifact (every ``.json`` artifact when none named) that fails to parse."""

    def _validator(artifacts: dict[str, str], phase: str) -> list[ValidationIssue]:
        targets = names or tuple(name for name in artifacts if name.endswith(".json"))
        issues = []
        for name in targets:
            content = artifacts.get(name)
            if not content:
                continue
            try:
                json.loads(content)
            except json.JSONDecodeError:
                issues.append(ValidationIssue("error", f"Invalid JSON in {name}", phase, name))
        return issues

    return _validator


def json_keys(name: str, keys: tuple[str, ...], label: str = "definition") -> Validator:
    def _validator(artifacts: dict[str, str], phase: str) -> list[ValidationIssue]:
        content = artifacts.get(name)
        if not content:
            return []
        try:
            payload = json.loads(content)
        except json.JSONDecodeError:
            return []
        if not isinstance(payload, dict):
            return []
        missing = [key for key in keys if not payload.get(key)]
        if not missing:
            return []
        return [
            ValidationIssue(
                "warning",
                f"Incomplete {label} - missing: {', '.join(missing)}",
                phase,
                name,
            )
        ]

    return _validator


PHASE_EXTRA_VALIDATORS: dict[str, list[Validator]] = {
    "ANALYSIS": [markdown_frontmatter, unresolved_clarifications],
    "STACK_SELECTION": [
        valid_json("stack.json"),
        json_keys("stack.json", ("frontend", "backend", "database"), "stack definition"),
    ],
}
GENERIC_VALIDATORS: list[Validator] = [valid_json(), unresolved_clarifications]


def validators_for_registry(registry: PhaseRegistry) -> dict[str, list[Validator]]:
    mapping: dict[str, list[Validator]] = {}
    for spec in registry.phases:
        validators: list[Validator] = []
        if spec.required_artifacts:
            validators.append(require_artifacts(*spec.required_artifacts))
        validators.extend(PHASE_EXTRA_VALIDATORS.get(spec.name, GENERIC_VALIDATORS))
        mapping[spec.name] = validators
    return mapping


class InlineValidator:
    """Fast structural checks run right after a phase produces its artifacts.

    Errors block the phase; warnings never do but are carried forward so the
    caller can show how many have piled up across phases.
    """

    def __init__(self, validators: dict[str, list[Validator]]) -> None:
        self.validators = {phase: list(items) for phase, items in validators.items()}

    @classmethod
    def for_registry(cls, registry: PhaseRegistry) -> InlineValidator:
        return cls(validators_for_registry(registry))

    def register(self, phase: str, validator: Validator) -> None:
        self.validators.setdefault(phase, []).append(validator)

    def validate(
        self,
        phase: str,
        artifacts: dict[str, str],
        accumulated_warnings: list[ValidationIssue] | None = None,
    ) -> InlineValidationResult:
        issues: list[ValidationIssue] = []
        for validator in self.validators.get(phase, []):
            issues.extend(validator(artifacts, phase))
        errors = [issue for issue in issues if issue.severity == "error"]
        warnings = [issue for issue in issues if issue.severity == "warning"]
        return InlineValidationResult(
            passed=not errors,
            can_proceed=not errors,
            errors=errors,
            warnings=warnings,
            accumulated_warnings=[*(accumulated_warnings or []), *warnings],
        )


PhaseOutcomeState = Literal["all_pass", "warnings_only", "failures_detected"]
PhaseTransition = Literal["proceed", "user_choice", "auto_remedy"]


@dataclass(frozen=True, slots=True)
class PhaseOutcome:
    state: PhaseOutcomeState
    transition: PhaseTransition
    can_proceed: bool
    requires_user_decision: bool
    reason: str
    warning_count: int = 0
    error_count: int = 0
    failed_artifacts: tuple[str, ...] = ()
    choices: tuple[str, ...] = ()


def determine_phase_outcome(result: InlineValidationResult) -> PhaseOutcome:
    if result.errors:
        failed = tuple(dict.fromkeys(issue.artifact for issue in result.errors if issue.artifact))
        return PhaseOutcome(
            state="failures_detected",
            transition="auto_remedy",
            can_proceed=False,
            requires_user_decision=False,
            reason=f"{len(result.errors)} validation error(s) detected - remediation required",
            error_count=len(result.errors),
            failed_artifacts=failed,
        )
    if result.warnings:
        return PhaseOutcome(
            state="warnings_only",
            transition="user_choice",
            can_proceed=True,
            requires_user_decision=True,
            reason=f"{len(result.warnings)} warning(s) detected - user choice required",
            warning_count=len(result.warnings),
            choices=("proceed", "fix_warnings"),
        )
    return PhaseOutcome(
        state="all_pass",
        transition="proceed",
        can_proceed=True,
        requires_user_decision=False,
        reason="All validations passed",
    )
