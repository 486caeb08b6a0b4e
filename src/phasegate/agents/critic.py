from __future__ import annotations

from phasegate.agents.base import BackendAgent
from phasegate.checker import CriticReviewer
from phasegate.registry import CriticPersona


class CriticAgent(BackendAgent, CriticReviewer):
    role = "critic"
    fallback_prompt = """
You are an adversarial reviewer.
Report concrete findings only and always answer in the JSON format you are given.
""".strip()

    async def review(self, prompt: str, persona: CriticPersona) -> str:
        return await self.complete(prompt, {"critic": persona.name})
