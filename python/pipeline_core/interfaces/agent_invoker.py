"""Interface for the content-generating side of a pipeline stage.

The orchestrator never looks inside a stage; it only calls ``invoke``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pipeline_core.pipeline.session import OrchestratorSession
    from pipeline_core.pipeline.stages import StageDefinition


class IAgentInvoker(Protocol):
    """Executes the unit of work a stage wraps.

    Contract:
    - return a non-empty string describing the produced output, or raise
    - never retry internally (the orchestrator owns retries)
    - be safe to call again after a failure
    """

    async def invoke(self, stage: StageDefinition, session: OrchestratorSession) -> str:
        """Run the agent behind *stage*.

        Args:
            stage: Stage being executed
            session: Current session (read-only for the invoker)

        Returns:
            Human-readable description of the produced output
        """
        ...
