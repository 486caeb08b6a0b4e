from __future__ import annotations

from phasegate.agents.base import ArtifactAgent


class ProductManagerAgent(ArtifactAgent):
    role = "pm"
    fallback_prompt = """
You are the Product Manager.
Turn the project brief and personas into a testable PRD.
Every requirement needs acceptance criteria and a persona it serves.
""".strip()
