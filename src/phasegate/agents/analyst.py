from __future__ import annotations

import json
import logging
import re
from typing import Any

from phasegate.agents.base import ArtifactAgent
from phasegate.clarification import AssumptionResolver, ClarificationQuestion

logger = logging.getLogger(__name__)


class AnalystAgent(ArtifactAgent, AssumptionResolver):
    role = "analyst"
    fallback_prompt = """
You are the Business Analyst.
Write the project brief, the constitution and the personas.
Mark anything you cannot infer as [CLARIFICATION NEEDED: question].
""".strip()

    async def resolve(
        self, questions: list[ClarificationQuestion], context: dict[str, Any]
    ) -> dict[str, tuple[str, str]]:
        listing = "\n".join(
            f"- {question.id} ({question.category}): {question.question}" for question in questions
        )
        prompt = (
            "Answer each open question with the most reasonable assumption.\n"
            'Reply with one JSON object: {"<id>": {"assumption": "...", "rationale": "..."}}\n\n'
            f"{listing}"
        )
        reply = await self.complete(prompt, context)
        match = re.search(r"\{[\s\S]*\}", reply)
        if match is None:
            logger.warning("Analyst returned no assumptions")
            return {}
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError:
            logger.warning("Analyst assumptions were not valid JSON")
            return {}
        resolved: dict[str, tuple[str, str]] = {}
        for question in questions:
            item = payload.get(question.id) if isinstance(payload, dict) else None
            if isinstance(item, dict) and item.get("assumption"):
                resolved[question.id] = (
                    str(item["assumption"]),
                    str(item.get("rationale") or ""),
                )
        return resolved
