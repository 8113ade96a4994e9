"""Stage catalogs per pipeline mode.

A stage is coarser than a work item: it wraps one agent invocation and
declares the stages it depends on.  Execution order is computed by the
same ``DependencyAnalyzer`` used for work items.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from pipeline_core.exceptions_unified import GraphValidationError, InvalidStageError
from pipeline_core.scheduling.dependency_analyzer import (
    DependencyAnalyzer,
    DependencyEdge,
    Priority,
    WorkItem,
)


class PipelineMode(str, Enum):
    GREENFIELD = "greenfield"
    ENHANCEMENT = "enhancement"
    IMPORT = "import"


@dataclass(frozen=True)
class StageDefinition:
    """A named stage, the agent behind it, and its prerequisites."""

    name: str
    agent_type: str
    description: str = ""
    depends_on: Tuple[str, ...] = ()
    parallel: bool = False
    approval_required: bool = False


def _chain(*specs: Tuple[str, str, str, bool, bool]) -> Tuple[StageDefinition, ...]:
    """Linear catalog: each stage depends on the previous one."""
    stages = []
    previous: Optional[str] = None
    for name, agent_type, description, parallel, approval in specs:
        stages.append(StageDefinition(
            name=name,
            agent_type=agent_type,
            description=description,
            depends_on=(previous,) if previous else (),
            parallel=parallel,
            approval_required=approval,
        ))
        previous = name
    return tuple(stages)


GREENFIELD_STAGES: Tuple[StageDefinition, ...] = _chain(
    ("initialization", "project-initializer", "Initialize the project state directory", False, False),
    ("mode_detection", "mode-detector", "Detect pipeline execution mode", False, False),
    ("collection", "collector", "Collect and structure user requirements", False, True),
    ("prd_generation", "prd-writer", "Generate PRD from collected information", False, True),
    ("srs_generation", "srs-writer", "Generate SRS from PRD", False, True),
    ("repo_detection", "repo-detector", "Detect existing repository presence", False, False),
    ("github_repo_setup", "github-repo-setup", "Create and initialize the repository", False, True),
    ("sds_generation", "sds-writer", "Generate SDS from SRS", False, True),
    ("issue_generation", "issue-generator", "Generate issues from SDS", False, True),
    ("orchestration", "controller", "Orchestrate work distribution", False, False),
    ("implementation", "worker", "Implement assigned issues", True, False),
    ("review", "pr-reviewer", "Create and review pull requests", False, False),
)

_ANALYSIS_ROOTS = ("document_reading", "codebase_analysis", "code_reading")

ENHANCEMENT_STAGES: Tuple[StageDefinition, ...] = (
    StageDefinition("document_reading", "document-reader", "Read existing project documents", parallel=True),
    StageDefinition("codebase_analysis", "codebase-analyzer", "Analyze codebase architecture", parallel=True),
    StageDefinition("code_reading", "code-reader", "Build an inventory of the source code", parallel=True),
    StageDefinition(
        "doc_code_comparison", "doc-code-comparator", "Compare documents against code",
        depends_on=_ANALYSIS_ROOTS,
    ),
) + tuple(
    StageDefinition(name, agent, description, depends_on=(prev,), parallel=parallel, approval_required=approval)
    for prev, name, agent, description, parallel, approval in (
        ("doc_code_comparison", "impact_analysis", "impact-analyzer", "Analyze change impact", False, False),
        ("impact_analysis", "prd_update", "prd-updater", "Update the PRD", False, True),
        ("prd_update", "srs_update", "srs-updater", "Update the SRS", False, True),
        ("srs_update", "sds_update", "sds-updater", "Update the SDS", False, True),
        ("sds_update", "issue_generation", "issue-generator", "Generate issues for the change", False, True),
        ("issue_generation", "orchestration", "controller", "Orchestrate work distribution", False, False),
        ("orchestration", "implementation", "worker", "Implement assigned issues", True, False),
        ("implementation", "regression_testing", "regression-tester", "Run regression tests", False, False),
        ("regression_testing", "review", "pr-reviewer", "Create and review pull requests", False, False),
    )
)

IMPORT_STAGES: Tuple[StageDefinition, ...] = _chain(
    ("issue_reading", "issue-reader", "Import existing issues", False, False),
    ("orchestration", "controller", "Orchestrate work distribution", False, False),
    ("implementation", "worker", "Implement assigned issues", True, False),
    ("review", "pr-reviewer", "Create and review pull requests", False, False),
)

DEFAULT_CATALOGS: Dict[PipelineMode, Tuple[StageDefinition, ...]] = {
    PipelineMode.GREENFIELD: GREENFIELD_STAGES,
    PipelineMode.ENHANCEMENT: ENHANCEMENT_STAGES,
    PipelineMode.IMPORT: IMPORT_STAGES,
}

StageCatalogs = Mapping[PipelineMode, Sequence[StageDefinition]]


def get_stages_for_mode(
    mode: PipelineMode, catalogs: Optional[StageCatalogs] = None
) -> List[StageDefinition]:
    """Catalog order of the stages for *mode*."""
    source = catalogs if catalogs is not None else DEFAULT_CATALOGS
    return list(source[PipelineMode(mode)])


def get_stage(
    mode: PipelineMode, name: str, catalogs: Optional[StageCatalogs] = None
) -> StageDefinition:
    for stage in get_stages_for_mode(mode, catalogs):
        if stage.name == name:
            return stage
    raise InvalidStageError(name, PipelineMode(mode).value)


def stage_execution_order(stages: Sequence[StageDefinition]) -> List[StageDefinition]:
    """Dependency order of *stages*; catalog order breaks ties.

    Raises:
        GraphValidationError: a stage depends on an unknown stage or the
            catalog contains a cycle.
    """
    items = [WorkItem(id=s.name, title=s.description or s.name, priority=Priority.P2, effort=1.0)
             for s in stages]
    edges = [DependencyEdge(s.name, dep) for s in stages for dep in s.depends_on]
    result = DependencyAnalyzer().analyze(items, edges)
    if result.has_cycles:
        raise GraphValidationError(
            [f"Stage cycle: {' -> '.join(c.nodes)}" for c in result.cycles]
        )
    by_name = {s.name: s for s in stages}
    return [by_name[name] for name in result.execution_order]


def stages_before(
    mode: PipelineMode, name: str, catalogs: Optional[StageCatalogs] = None
) -> List[str]:
    """Stages strictly before *name* in execution order."""
    order = [s.name for s in stage_execution_order(get_stages_for_mode(mode, catalogs))]
    if name not in order:
        raise InvalidStageError(name, PipelineMode(mode).value)
    return order[:order.index(name)]


def downstream_of(stages: Sequence[StageDefinition], names: Sequence[str]) -> Set[str]:
    """Every stage that transitively depends on any of *names*."""
    dependents: Dict[str, List[str]] = {s.name: [] for s in stages}
    for stage in stages:
        for dep in stage.depends_on:
            dependents.setdefault(dep, []).append(stage.name)

    result: Set[str] = set()
    queue: deque[str] = deque(names)
    while queue:
        for dependent in dependents.get(queue.popleft(), ()):
            if dependent not in result:
                result.add(dependent)
                queue.append(dependent)
    return result
