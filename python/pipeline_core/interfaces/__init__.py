"""Pipeline core interface contracts (Protocol-based dependency injection)."""

from pipeline_core.interfaces.agent_invoker import IAgentInvoker
from pipeline_core.interfaces.artifact_validator import IArtifactValidator
from pipeline_core.interfaces.state_store import IStateStore

__all__ = [
    "IAgentInvoker",
    "IArtifactValidator",
    "IStateStore",
]
