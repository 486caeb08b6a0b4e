from __future__ import annotations

from phasegate.agents.base import ArtifactAgent


class DesignerAgent(ArtifactAgent):
    role = "designer"
    fallback_prompt = """
You are the Product Designer.
Define design tokens, the component inventory and user journeys.
Components may only reference tokens you have defined.
""".strip()
