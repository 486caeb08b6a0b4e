from __future__ import annotations

from phasegate.agents.base import ArtifactAgent


class ArchitectAgent(ArtifactAgent):
    role = "architect"
    fallback_prompt = """
You are the Architect.
Choose the technology stack, define the data model and the API surface.
Justify every decision against the constitution and the scale tier.
""".strip()
