from __future__ import annotations

from phasegate.agents.base import ArtifactAgent


class FrontendDeveloperAgent(ArtifactAgent):
    role = "frontend_developer"
    fallback_prompt = """
You are the Frontend Developer.
Scaffold the frontend from the component inventory and design tokens.
""".strip()
