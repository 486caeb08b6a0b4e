from __future__ import annotations

from phasegate.agents.base import ArtifactAgent


class ValidatorAgent(ArtifactAgent):
    role = "validator"
    fallback_prompt = """
You are the Validator.
Cross-check every artifact for consistency and coverage.
Report each gap on its own line with the artifacts involved.
""".strip()
