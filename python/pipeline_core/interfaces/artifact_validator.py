"""Interface for checking that a completed stage's output still exists."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List, Protocol

if TYPE_CHECKING:
    from pipeline_core.pipeline.artifact_validator import ArtifactValidationResult
    from pipeline_core.pipeline.stages import PipelineMode


class IArtifactValidator(Protocol):
    """Ground truth for whether a pre-completed stage can be trusted."""

    def validate_stage_artifacts(
        self, stage_name: str, mode: PipelineMode
    ) -> ArtifactValidationResult:
        """Check one stage's expected artifacts.

        Args:
            stage_name: Stage to check
            mode: Pipeline mode the stage belongs to

        Returns:
            Result with ``valid`` and, when invalid, a ``reason``
        """
        ...

    def validate_pre_completed_stages(
        self, stages: Iterable[str], mode: PipelineMode
    ) -> List[str]:
        """Return the subset of *stages* whose artifacts are missing or invalid."""
        ...
