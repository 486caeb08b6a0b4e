from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from phasegate.backends.base import AgentBackend
from phasegate.backends.resilient import ResilientBackend

ARTIFACT_BLOCK = re.compile(
    r"^=== FILE: (?P<name>[^\n=]+?) ===\n(?P<body>.*?)\n=== END FILE ===$",
    re.MULTILINE | re.DOTALL,
)
CONTEXT_ARTIFACT_CHARS = 4000


class AgentOutputError(RuntimeError):
    """Raised when an agent reply cannot be turned into artifacts."""


@dataclass(slots=True)
class PhaseParams:
    phase: str
    owner: str
    required_artifacts: tuple[str, ...] = ()
    description: str = ""
    instructions: str = ""
    feedback: str | None = None
    attempt: int = 0
    max_retries: int | None = None
    timeout_seconds: float | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def prompt(self) -> str:
        """Instructions for this attempt; a regeneration carries the critic feedback."""
        return self.feedback if self.feedback else self.instructions


class AgentExecutor(ABC):
    """Turns accumulated artifacts and phase parameters into new artifacts."""

    @abstractmethod
    async def execute(
        self,
        project_id: str,
        accumulated_artifacts: dict[str, str],
        params: PhaseParams,
    ) -> dict[str, str]:
        """Return ``filename -> content`` for the phase described by ``params``."""


def parse_artifact_blocks(text: str) -> dict[str, str]:
    return {
        match.group("name").strip(): match.group("body")
        for match in ARTIFACT_BLOCK.finditer(text)
    }


class BackendAgent:
    role: str = "agent"
    fallback_prompt: str = "You are a software delivery specialist."

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self.fallback_prompt.strip()

    def _backend_for(self, params: PhaseParams | None) -> AgentBackend:
        if params is None or not isinstance(self.backend, ResilientBackend):
            return self.backend
        if params.max_retries is None and params.timeout_seconds is None:
            return self.backend
        policy = self.backend.retry_policy.override(
            max_retries=params.max_retries, timeout_seconds=params.timeout_seconds
        )
        return self.backend.with_policy(policy)

    async def complete(
        self,
        user_prompt: str,
        context: dict[str, Any] | None = None,
        params: PhaseParams | None = None,
    ) -> str:
        run_context = dict(context or {})
        if self.model:
            run_context["model"] = self.model
        backend = self._backend_for(params)
        chunks: list[str] = []
        async for chunk in backend.execute(self.system_prompt, user_prompt, run_context):
            chunks.append(chunk)
        return "".join(chunks).strip()


class ArtifactAgent(BackendAgent, AgentExecutor):
    """Agent whose reply carries artifacts as ``=== FILE: name ===`` blocks."""

    def build_prompt(self, accumulated_artifacts: dict[str, str], params: PhaseParams) -> str:
        lines = [f"# PHASE {params.phase}"]
        if params.description:
            lines.append(params.description)
        if params.required_artifacts:
            lines.append("")
            lines.append("## Required outputs")
            lines.extend(f"- {name}" for name in params.required_artifacts)
        if params.prompt:
            lines.append("")
            lines.append("## Instructions")
            lines.append(params.prompt)
        if accumulated_artifacts:
            lines.append("")
            lines.append("## Existing artifacts")
            for name, content in accumulated_artifacts.items():
                lines.append(f"### {name}")
                lines.append(content[:CONTEXT_ARTIFACT_CHARS])
        lines.append("")
        lines.append("## Output format")
        lines.append("Emit every artifact as:")
        lines.append("=== FILE: <filename> ===")
        lines.append("<content>")
        lines.append("=== END FILE ===")
        return "\n".join(lines)

    async def execute(
        self,
        project_id: str,
        accumulated_artifacts: dict[str, str],
        params: PhaseParams,
    ) -> dict[str, str]:
        context = {"project_id": project_id, "phase": params.phase, "attempt": params.attempt}
        context.update(params.context)
        reply = await self.complete(
            self.build_prompt(accumulated_artifacts, params), context, params
        )
        artifacts = parse_artifact_blocks(reply)
        if not artifacts and len(params.required_artifacts) == 1 and reply:
            artifacts = {params.required_artifacts[0]: reply}
        if not artifacts:
            raise AgentOutputError(
                f"{self.role} produced no artifacts for {params.phase}"
            )
        return artifacts
