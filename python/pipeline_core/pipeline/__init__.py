"""Stage catalogs, sessions and the pipeline orchestrator."""

from pipeline_core.pipeline.artifact_validator import (
    ArtifactSpec,
    ArtifactValidationResult,
    ArtifactValidator,
    StageArtifactMap,
)
from pipeline_core.pipeline.orchestrator import (
    ApprovalDecision,
    ApprovalMode,
    DefaultAgentInvoker,
    OrchestratorConfig,
    PipelineOrchestrator,
    PipelineRequest,
    PipelineResult,
    determine_overall_status,
)
from pipeline_core.pipeline.session import (
    MonitorSnapshot,
    OrchestratorSession,
    PipelineStatus,
    SessionRepository,
    SessionStatistics,
    StageResult,
    StageStatus,
)
from pipeline_core.pipeline.stages import (
    ENHANCEMENT_STAGES,
    GREENFIELD_STAGES,
    IMPORT_STAGES,
    PipelineMode,
    StageDefinition,
    get_stages_for_mode,
    stage_execution_order,
)

__all__ = [
    # Artifacts
    "ArtifactSpec",
    "ArtifactValidationResult",
    "ArtifactValidator",
    "StageArtifactMap",
    # Orchestrator
    "ApprovalDecision",
    "ApprovalMode",
    "DefaultAgentInvoker",
    "OrchestratorConfig",
    "PipelineOrchestrator",
    "PipelineRequest",
    "PipelineResult",
    "determine_overall_status",
    # Sessions
    "MonitorSnapshot",
    "OrchestratorSession",
    "PipelineStatus",
    "SessionRepository",
    "SessionStatistics",
    "StageResult",
    "StageStatus",
    # Stages
    "ENHANCEMENT_STAGES",
    "GREENFIELD_STAGES",
    "IMPORT_STAGES",
    "PipelineMode",
    "StageDefinition",
    "get_stages_for_mode",
    "stage_execution_order",
]
