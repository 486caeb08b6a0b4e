from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a language-model backend call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a backend call exceeds its configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when a backend subprocess cannot be started or read."""


class AgentBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Send one prompt and stream textual chunks of the reply."""


def render_context(user_prompt: str, context: dict[str, Any]) -> str:
    if not context:
        return user_prompt
    return f"{user_prompt}\n\nContext JSON:\n{json.dumps(context, ensure_ascii=False, indent=2)}"
