"""Default artifact validator: checks expected stage outputs on disk.

Patterns are relative to the project directory; ``*`` matches exactly one
path segment.  ``{state_dir}`` and ``{docs_dir}`` are substituted from the
validator's configuration.  A stage without an artifact definition is
always valid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pipeline_core.pipeline.stages import PipelineMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactSpec:
    path_pattern: str
    description: str
    required: bool = True


@dataclass(frozen=True)
class StageArtifactMap:
    stage: str
    artifacts: Tuple[ArtifactSpec, ...]


@dataclass(frozen=True)
class ArtifactValidationResult:
    valid: bool
    stage: str
    missing: Tuple[ArtifactSpec, ...] = ()
    found: Tuple[str, ...] = ()

    @property
    def reason(self) -> Optional[str]:
        if self.valid:
            return None
        return "Missing artifacts: " + ", ".join(
            f"{spec.description} ({spec.path_pattern})" for spec in self.missing
        )


def _single(stage: str, pattern: str, description: str) -> StageArtifactMap:
    return StageArtifactMap(stage, (ArtifactSpec(pattern, description),))


GREENFIELD_ARTIFACTS: Tuple[StageArtifactMap, ...] = (
    _single("initialization", "{state_dir}", "State directory"),
    _single("collection", "{state_dir}/info/*/collected_info.yaml", "Collected requirements"),
    StageArtifactMap("prd_generation", (
        ArtifactSpec("{state_dir}/documents/*/prd.md", "PRD document (state)"),
        ArtifactSpec("{docs_dir}/prd/*.md", "PRD document (public)", required=False),
    )),
    _single("srs_generation", "{state_dir}/documents/*/srs.md", "SRS document"),
    _single("sds_generation", "{state_dir}/documents/*/sds.md", "SDS document"),
    _single("issue_generation", "{state_dir}/issues/issue_list.json", "Issue list"),
)

ENHANCEMENT_ARTIFACTS: Tuple[StageArtifactMap, ...] = (
    _single("document_reading", "{state_dir}/analysis/*/document_state.yaml", "Document state analysis"),
    _single("codebase_analysis", "{state_dir}/analysis/*/architecture_overview.yaml", "Architecture overview"),
    _single("code_reading", "{state_dir}/analysis/*/code_inventory.yaml", "Code inventory"),
    _single("doc_code_comparison", "{state_dir}/analysis/*/comparison_report.yaml", "Doc-code comparison report"),
    _single("impact_analysis", "{state_dir}/analysis/*/impact_report.yaml", "Impact analysis report"),
    _single("prd_update", "{state_dir}/documents/*/prd.md", "Updated PRD document"),
    _single("srs_update", "{state_dir}/documents/*/srs.md", "Updated SRS document"),
    _single("sds_update", "{state_dir}/documents/*/sds.md", "Updated SDS document"),
    _single("issue_generation", "{state_dir}/issues/issue_list.json", "Issue list"),
)

DEFAULT_ARTIFACT_MAPS: Dict[PipelineMode, Tuple[StageArtifactMap, ...]] = {
    PipelineMode.GREENFIELD: GREENFIELD_ARTIFACTS,
    PipelineMode.ENHANCEMENT: ENHANCEMENT_ARTIFACTS,
    PipelineMode.IMPORT: (),
}


class ArtifactValidator:
    """Checks that pre-completed stages still have their outputs."""

    def __init__(
        self,
        project_dir: Union[str, Path],
        state_dir: str = ".ad-sdlc/scratchpad",
        docs_dir: str = "docs",
        artifact_maps: Optional[Mapping[PipelineMode, Sequence[StageArtifactMap]]] = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.state_dir = state_dir.rstrip("/")
        self.docs_dir = docs_dir.rstrip("/")
        self.artifact_maps = artifact_maps if artifact_maps is not None else DEFAULT_ARTIFACT_MAPS

    def get_artifact_map(self, mode: PipelineMode) -> List[StageArtifactMap]:
        return list(self.artifact_maps.get(PipelineMode(mode), ()))

    def validate_stage_artifacts(self, stage_name: str, mode: PipelineMode) -> ArtifactValidationResult:
        entry = next((e for e in self.get_artifact_map(mode) if e.stage == stage_name), None)
        if entry is None:
            return ArtifactValidationResult(valid=True, stage=stage_name)

        missing: List[ArtifactSpec] = []
        found: List[str] = []
        for spec in entry.artifacts:
            matches = self.resolve(spec.path_pattern)
            if matches:
                found.extend(matches)
            elif spec.required:
                missing.append(spec)
        return ArtifactValidationResult(
            valid=not missing, stage=stage_name, missing=tuple(missing), found=tuple(found)
        )

    def validate_pre_completed_stages(self, stages: Iterable[str], mode: PipelineMode) -> List[str]:
        invalid = []
        for stage_name in stages:
            result = self.validate_stage_artifacts(stage_name, mode)
            if not result.valid:
                logger.info("Pre-completed stage %s invalidated: %s", stage_name, result.reason)
                invalid.append(stage_name)
        return invalid

    def resolve(self, pattern: str) -> List[str]:
        """Existing paths matching *pattern*, relative to the project dir."""
        expanded = pattern.format(state_dir=self.state_dir, docs_dir=self.docs_dir)
        if not expanded or expanded.startswith("/"):
            raise ValueError(f"Artifact pattern must be relative: {pattern!r}")
        return sorted(
            p.relative_to(self.project_dir).as_posix()
            for p in self.project_dir.glob(expanded)
        )
