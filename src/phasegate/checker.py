from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from phasegate.registry import (
    CRITIC_PERSONAS,
    DEFAULT_CRITICS,
    CriticPersona,
    CriticPhaseConfig,
)

logger = logging.getLogger(__name__)

Severity = Literal["low", "medium", "critical"]
CheckerStatus = Literal["approved", "regenerate", "escalate"]

TRUNCATION_MARKER = "\n...[truncated]"
ARTIFACT_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True, slots=True)
class CriticFeedback:
    severity: Severity
    category: str
    concern: str
    recommendation: str
    location: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "severity": self.severity,
            "category": self.category,
            "concern": self.concern,
            "recommendation": self.recommendation,
        }
        if self.location:
            payload["location"] = self.location
        return payload


@dataclass(slots=True)
class CheckerResult:
    status: CheckerStatus
    feedback: list[CriticFeedback] = field(default_factory=list)
    confidence: float = 1.0
    summary: str = ""
    critic: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "feedback": [item.to_dict() for item in self.feedback],
            "confidence": self.confidence,
            "summary": self.summary,
            "critic": self.critic,
        }


@dataclass(frozen=True, slots=True)
class ParsedFeedback:
    items: tuple[CriticFeedback, ...]


@dataclass(frozen=True, slots=True)
class ParseFailure:
    reason: str
    raw: str = ""


class CriticReviewer(ABC):
    """Sends a review prompt to an adversarial reviewer and returns its raw reply."""

    @abstractmethod
    async def review(self, prompt: str, persona: CriticPersona) -> str:
        """Return the reviewer's raw text for ``prompt``."""


def normalize_severity(value: Any) -> Severity:
    normalized = str(value or "").strip().lower()
    if normalized in {"critical", "high"}:
        return "critical"
    if normalized == "medium":
        return "medium"
    return "low"


def _extract_json_object(text: str) -> str | None:
    fenced = re.search(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", text)
    if fenced:
        return fenced.group(1)
    greedy = re.search(r"\{[\s\S]*\}", text)
    return greedy.group(0) if greedy else None


def decode_critic_feedback(text: str) -> ParsedFeedback | ParseFailure:
    """Decode a reviewer reply into feedback items.

    The reply is expected to hold one JSON object with a ``feedback`` list,
    either bare, surrounded by prose, or inside a fenced block. Missing fields
    are defaulted; anything else is reported as a ``ParseFailure``.
    """
    candidate = _extract_json_object(text or "")
    if candidate is None:
        return ParseFailure("No JSON object found in critic response", raw=text or "")
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return ParseFailure(f"Critic response is not valid JSON: {exc.msg}", raw=text)
    if not isinstance(payload, dict):
        return ParseFailure("Critic response JSON is not an object", raw=text)

    raw_items = payload.get("feedback")
    if not isinstance(raw_items, list):
        return ParsedFeedback(())

    items: list[CriticFeedback] = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        location = item.get("location")
        items.append(
            CriticFeedback(
                severity=normalize_severity(item.get("severity") or "low"),
                category=str(item.get("category") or "General"),
                concern=str(item.get("concern") or "No description provided"),
                recommendation=str(item.get("recommendation") or "Review and fix"),
                location=str(location) if location else None,
            )
        )
    return ParsedFeedback(tuple(items))


def count_by_severity(feedback: list[CriticFeedback]) -> dict[str, int]:
    return {
        severity: len(filter_by_severity(feedback, severity))
        for severity in ("critical", "medium", "low")
    }


def has_critical_issues(feedback: list[CriticFeedback]) -> bool:
    return any(item.severity == "critical" for item in feedback)


def filter_by_severity(feedback: list[CriticFeedback], severity: Severity) -> list[CriticFeedback]:
    return [item for item in feedback if item.severity == severity]


def evaluate_decision(feedback: list[CriticFeedback], artifacts: dict[str, str]) -> CheckerResult:
    counts = count_by_severity(feedback)
    critical, medium, low = counts["critical"], counts["medium"], counts["low"]

    total_chars = sum(len(content) for content in artifacts.values())
    density = len(feedback) / max(total_chars / 10000, 1)
    confidence = max(0.5, 1 - density * 0.1 - critical * 0.2 - medium * 0.05)

    if critical > 0:
        status: CheckerStatus = "escalate"
        summary = f"Found {critical} critical issue(s) requiring human review"
    elif medium > 2:
        status = "regenerate"
        summary = f"Found {medium} medium issues - regeneration recommended"
    elif medium > 0:
        status = "regenerate"
        summary = f"Found {medium} medium issue(s) to address"
    elif low > 5:
        status = "regenerate"
        summary = f"Found {low} low issues for improvement"
    else:
        status = "approved"
        summary = (
            "No issues found - approved"
            if not feedback
            else f"Approved with {low} minor suggestion(s)"
        )
    return CheckerResult(status=status, feedback=list(feedback), confidence=confidence, summary=summary)


def build_regeneration_prompt(original_prompt: str, feedback: list[CriticFeedback]) -> str:
    entries = "\n\n".join(
        f"{index}. [{item.severity.upper()}] {item.category}\n"
        f"   Concern: {item.concern}\n"
        f"   Fix: {item.recommendation}"
        for index, item in enumerate(feedback, start=1)
    )
    return (
        f"{original_prompt}\n\n"
        "---\n\n"
        "## CRITIC REVIEW FEEDBACK - MUST ADDRESS\n\n"
        "The following issues were identified:\n\n"
        f"{entries}\n\n"
        "## INSTRUCTIONS\n\n"
        "1. You MUST address EACH issue listed above\n"
        "2. If you don't understand an issue, state what clarification you need\n"
        "3. Output must be complete - fix ALL issues in one response\n"
        "4. Do not repeat the same mistakes\n\n"
        "Generate the corrected artifacts:\n"
    )


class CheckerPattern:
    """Adversarial second-pass review of generated artifacts."""

    def __init__(
        self,
        reviewer: CriticReviewer,
        *,
        phase_configs: dict[str, CriticPhaseConfig] | None = None,
        personas: dict[str, CriticPersona] | None = None,
        truncate_chars: int = 2000,
    ) -> None:
        self.reviewer = reviewer
        self.phase_configs = dict(DEFAULT_CRITICS if phase_configs is None else phase_configs)
        self.personas = dict(CRITIC_PERSONAS if personas is None else personas)
        self.truncate_chars = truncate_chars

    def configure_phase(self, phase: str, config: CriticPhaseConfig) -> None:
        self.phase_configs[phase] = config

    def phase_config(self, phase: str) -> CriticPhaseConfig | None:
        return self.phase_configs.get(phase)

    def critic_for_phase(self, phase: str) -> CriticPersona | None:
        config = self.phase_configs.get(phase)
        if config is None:
            return None
        return self.personas.get(config.critic)

    def configured_phases(self) -> list[str]:
        return list(self.phase_configs)

    def _render_artifacts(self, artifacts: dict[str, str]) -> str:
        sections = []
        for name, content in artifacts.items():
            body = content[: self.truncate_chars]
            if len(content) > self.truncate_chars:
                body += TRUNCATION_MARKER
            sections.append(f"## {name}\n{body}")
        return ARTIFACT_SEPARATOR.join(sections)

    def build_review_prompt(
        self, persona: CriticPersona, artifacts: dict[str, str], context: dict[str, Any]
    ) -> str:
        criteria = "\n".join(f"- {item}" for item in persona.review_criteria)
        return f"""# ROLE
You are a {persona.name} ({persona.perspective}).
Your expertise: {", ".join(persona.expertise)}.

# TASK
Review the generated artifacts below and identify quality issues, risks, and concerns.
Be adversarial - don't accept superficial quality. Challenge assumptions.

# REVIEW CRITERIA (check each carefully)
{criteria}

# CONTEXT
Project: {context.get("project_name") or "Unknown"}
Scale Tier: {context.get("scale_tier") or "Unknown"}
Phase: {context.get("phase") or "Unknown"}

# ARTIFACTS TO REVIEW
{self._render_artifacts(artifacts)}

# OUTPUT FORMAT
You MUST output a valid JSON object with this structure:

```json
{{
  "feedback": [
    {{
      "severity": "low|medium|critical",
      "category": "Brief category name",
      "concern": "What you found problematic - be specific",
      "recommendation": "How to fix it - actionable advice",
      "location": "File and approximate location if available"
    }}
  ],
  "verdict": "approve|regenerate|escalate",
  "confidence": 0.95,
  "summary": "Brief 1-2 sentence summary of your review"
}}
```

# SEVERITY GUIDELINES
- **critical**: Security flaw, data loss risk, complete blocker, or serious vulnerability
- **medium**: Significant concern that will cause problems in production
- **low**: Minor nit, style issue, or future consideration

# VERDICT RULES
- "escalate" if ANY critical issues found (especially security)
- "regenerate" if more than 2 medium issues, or any medium issues in critical paths
- "approve" only if no critical issues and at most 2 low issues

Now review the artifacts thoroughly and output your JSON review:
"""

    async def _collect_feedback(
        self, persona: CriticPersona, artifacts: dict[str, str], context: dict[str, Any]
    ) -> list[CriticFeedback]:
        prompt = self.build_review_prompt(persona, artifacts, context)
        try:
            raw = await self.reviewer.review(prompt, persona)
        except Exception as exc:
            logger.error("Critic review by %s failed: %s", persona.name, exc)
            return []
        decoded = decode_critic_feedback(raw)
        if isinstance(decoded, ParseFailure):
            logger.warning("Discarding unparseable critic output: %s", decoded.reason)
            return []
        return list(decoded.items)

    async def execute_check(
        self, phase: str, artifacts: dict[str, str], context: dict[str, Any] | None = None
    ) -> CheckerResult:
        config = self.phase_configs.get(phase)
        if config is None:
            logger.info("No critic configured for %s, skipping review", phase)
            return CheckerResult("approved", [], 1.0, "No critic configured for this phase")
        persona = self.personas.get(config.critic)
        if persona is None:
            logger.error("Unknown critic '%s' configured for %s", config.critic, phase)
            return CheckerResult("approved", [], 1.0, "Unknown critic, skipping review")

        review_context = {"phase": phase, **(context or {})}
        logger.info("Running %s review for %s", persona.name, phase)
        feedback = await self._collect_feedback(persona, artifacts, review_context)
        result = evaluate_decision(feedback, artifacts)
        result.critic = config.critic
        counts = count_by_severity(feedback)
        logger.info(
            "Review of %s finished: %s (confidence %.2f, %d critical, %d medium, %d low)",
            phase,
            result.status,
            result.confidence,
            counts["critical"],
            counts["medium"],
            counts["low"],
        )
        return result
