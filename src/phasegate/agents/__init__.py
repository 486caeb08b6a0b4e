from phasegate.agents.analyst import AnalystAgent
from phasegate.agents.architect import ArchitectAgent
from phasegate.agents.base import (
    AgentExecutor,
    AgentOutputError,
    ArtifactAgent,
    BackendAgent,
    PhaseParams,
    parse_artifact_blocks,
)
from phasegate.agents.critic import CriticAgent
from phasegate.agents.designer import DesignerAgent
from phasegate.agents.devops import DevOpsAgent
from phasegate.agents.frontend import FrontendDeveloperAgent
from phasegate.agents.pm import ProductManagerAgent
from phasegate.agents.scrummaster import ScrumMasterAgent
from phasegate.agents.validator import ValidatorAgent

__all__ = [
    "AgentExecutor",
    "AgentOutputError",
    "AnalystAgent",
    "ArchitectAgent",
    "ArtifactAgent",
    "BackendAgent",
    "CriticAgent",
    "DesignerAgent",
    "DevOpsAgent",
    "FrontendDeveloperAgent",
    "PhaseParams",
    "ProductManagerAgent",
    "ScrumMasterAgent",
    "ValidatorAgent",
    "parse_artifact_blocks",
]
