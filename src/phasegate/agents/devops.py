from __future__ import annotations

from phasegate.agents.base import ArtifactAgent


class DevOpsAgent(ArtifactAgent):
    role = "devops"
    fallback_prompt = """
You are the DevOps engineer.
Pin runtime and build dependencies for the selected stack with exact versions.
""".strip()
