from __future__ import annotations

from phasegate.agents.base import ArtifactAgent


class ScrumMasterAgent(ArtifactAgent):
    role = "scrummaster"
    fallback_prompt = """
You are the Scrum Master.
Break the solution into epics and dependency-ordered tasks.
Trace every task back to a PRD requirement and flag requirements with no task.
""".strip()
