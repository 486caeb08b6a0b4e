from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

ClarificationMode = Literal["interactive", "hybrid", "auto_resolve"]
ResolvedBy = Literal["user", "ai"]
CLARIFICATION_MODES: tuple[str, ...] = ("interactive", "hybrid", "auto_resolve")


class ClarificationError(ValueError):
    """Raised for unknown question ids and unsupported modes."""


@dataclass(slots=True)
class ClarificationQuestion:
    id: str
    category: str
    question: str
    context: str | None = None
    suggested_options: list[str] = field(default_factory=list)
    user_answer: str | None = None
    ai_assumption: str | None = None
    ai_rationale: str | None = None
    resolved_by: ResolvedBy | None = None

    @property
    def resolved(self) -> bool:
        return self.resolved_by is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "question": self.question,
            "context": self.context,
            "suggested_options": list(self.suggested_options),
            "user_answer": self.user_answer,
            "ai_assumption": self.ai_assumption,
            "ai_rationale": self.ai_rationale,
            "resolved_by": self.resolved_by,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ClarificationQuestion:
        return cls(
            id=str(payload["id"]),
            category=str(payload.get("category", "general")),
            question=str(payload.get("question", "")),
            context=payload.get("context"),
            suggested_options=[str(item) for item in payload.get("suggested_options", [])],
            user_answer=payload.get("user_answer"),
            ai_assumption=payload.get("ai_assumption"),
            ai_rationale=payload.get("ai_rationale"),
            resolved_by=payload.get("resolved_by"),
        )


@dataclass(slots=True)
class ClarificationState:
    mode: ClarificationMode = "interactive"
    questions: list[ClarificationQuestion] = field(default_factory=list)
    skipped: bool = False

    @property
    def unresolved(self) -> list[ClarificationQuestion]:
        return [question for question in self.questions if not question.resolved]

    @property
    def completed(self) -> bool:
        return self.skipped or not self.unresolved

    def question(self, question_id: str) -> ClarificationQuestion:
        for question in self.questions:
            if question.id == question_id:
                return question
        raise ClarificationError(f"Unknown clarification question: {question_id}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "questions": [question.to_dict() for question in self.questions],
            "skipped": self.skipped,
            "completed": self.completed,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> ClarificationState:
        payload = payload or {}
        return cls(
            mode=payload.get("mode", "interactive"),
            questions=[
                ClarificationQuestion.from_dict(item)
                for item in payload.get("questions", [])
                if isinstance(item, dict)
            ],
            skipped=bool(payload.get("skipped", False)),
        )


class AssumptionResolver(ABC):
    """Produces an assumption and rationale for each open question."""

    @abstractmethod
    async def resolve(
        self, questions: list[ClarificationQuestion], context: dict[str, Any]
    ) -> dict[str, tuple[str, str]]:
        """Map question id to ``(assumption, rationale)``."""


def set_mode(state: ClarificationState, mode: str) -> None:
    if mode not in CLARIFICATION_MODES:
        raise ClarificationError(f"Unsupported clarification mode: {mode}")
    state.mode = mode  # type: ignore[assignment]


def add_questions(state: ClarificationState, questions: list[ClarificationQuestion]) -> None:
    known = {question.id for question in state.questions}
    for question in questions:
        if question.id in known:
            raise ClarificationError(f"Duplicate clarification question: {question.id}")
        known.add(question.id)
        state.questions.append(question)


def answer_question(state: ClarificationState, question_id: str, answer: str) -> ClarificationQuestion:
    question = state.question(question_id)
    question.user_answer = answer
    question.resolved_by = "user"
    return question


async def auto_resolve(
    state: ClarificationState,
    resolver: AssumptionResolver,
    context: dict[str, Any],
    question_ids: list[str] | None = None,
) -> list[ClarificationQuestion]:
    """Let ``resolver`` fill in assumptions for the selected (or all) open questions.

    Questions the resolver leaves out stay unresolved.
    """
    if question_ids is None:
        targets = state.unresolved
    else:
        targets = [state.question(question_id) for question_id in question_ids]
        targets = [question for question in targets if not question.resolved]
    if not targets:
        return []

    assumptions = await resolver.resolve(targets, context)
    resolved = []
    for question in targets:
        answer = assumptions.get(question.id)
        if answer is None:
            continue
        question.ai_assumption, question.ai_rationale = answer
        question.resolved_by = "ai"
        resolved.append(question)
    logger.info("Auto-resolved %d of %d clarification question(s)", len(resolved), len(targets))
    return resolved


def readiness(state: ClarificationState) -> tuple[bool, str]:
    """Whether a phase that needs clarification may run without further help.

    Interactive mode waits for the user. Hybrid and auto_resolve modes are ready
    once the caller has had a chance to auto-resolve the remaining questions.
    """
    if state.completed:
        return True, ""
    pending = ", ".join(question.id for question in state.unresolved)
    if state.mode == "interactive":
        return False, f"Unresolved clarification questions: {pending}"
    return False, f"Clarification questions awaiting auto-resolution: {pending}"
