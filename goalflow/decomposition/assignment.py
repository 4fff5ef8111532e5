"""Assignment resolver - binds sub-tasks to capable workers.

Workers are plain records with a capability set; matching is set
intersection against the sub-task's domain tags, never type dispatch.
"""

from collections import defaultdict
from collections.abc import Iterable, Mapping

from loguru import logger

from goalflow.decomposition.graph_store import GraphStore
from goalflow.decomposition.models import (
    Assignment,
    AssignmentReport,
    Effort,
    FlagKind,
    GranularityFlag,
    SubTask,
    UnassignableSubTask,
    WavePlan,
    WorkerDescriptor,
)
from goalflow.decomposition.registry import WorkerRegistry

UNSPECIFIED_CAPABILITY = "unspecified"


class AssignmentResolver:
    """
    Match each sub-task to a worker from the registry.

    Sub-tasks are visited in topological (wave) order. Among several
    capable workers the least loaded wins, counting bindings already made
    in the same pass; ties go to the lexically smallest worker ID.

    Example:
        >>> resolver = AssignmentResolver(registry)
        >>> report = resolver.resolve(store, wave_plan)
        >>> report.unassignable["qpu-calibration"].missing_capability
        'quantum-hardware'
    """

    def __init__(self, registry: WorkerRegistry) -> None:
        self.registry = registry

    def resolve(
        self,
        graph: GraphStore,
        wave_plan: WavePlan,
        subtask_ids: Iterable[str] | None = None,
        exclude_workers: Mapping[str, Iterable[str]] | None = None,
    ) -> AssignmentReport:
        """
        Assign workers to sub-tasks.

        Args:
            graph: Graph store holding the sub-tasks.
            wave_plan: Wave plan giving the topological order.
            subtask_ids: Restrict the pass to these sub-tasks.
            exclude_workers: Sub-task ID -> worker IDs that must not be chosen.

        Returns:
            AssignmentReport with bindings, unassignable sub-tasks and flags.
        """
        scope = set(subtask_ids) if subtask_ids is not None else set(graph.subtasks)
        order = [
            sid for wave in wave_plan.waves for sid in wave.subtask_ids if sid in scope
        ]
        excluded = {k: set(v) for k, v in (exclude_workers or {}).items()}

        report = AssignmentReport(flags=self.flag_granularity(graph, wave_plan, order))
        pass_load: dict[str, int] = defaultdict(int)

        for sid in order:
            task = graph.get(sid)
            candidates, missing, reason = self.candidates(task, excluded.get(sid, set()))

            if not candidates:
                logger.warning(f"Sub-task {sid} is UNASSIGNABLE: {reason}")
                report.unassignable[sid] = UnassignableSubTask(
                    subtask_id=sid,
                    missing_capability=missing,
                    reason=reason,
                )
                continue

            worker = min(
                candidates,
                key=lambda w: (w.current_load + pass_load[w.id], w.id),
            )
            pass_load[worker.id] += 1
            report.assignments[sid] = Assignment(
                subtask_id=sid,
                worker_id=worker.id,
                autonomy_level=worker.autonomy_level,
            )
            logger.debug(f"Assigned {sid} -> {worker.id} ({len(candidates)} candidates)")

        logger.info(
            f"Assignment: {len(report.assignments)} bound, "
            f"{len(report.unassignable)} unassignable, {len(report.flags)} flags"
        )
        return report

    def candidates(
        self,
        task: SubTask,
        exclude: Iterable[str] = (),
    ) -> tuple[list[WorkerDescriptor], str, str]:
        """
        Find workers able to take a sub-task.

        A worker qualifies when it advertises every domain tag of the
        sub-task and supports its execution mode. This is stricter than a
        plain capability-set intersection: overlapping on one tag of a
        multi-tag sub-task is not enough, and tags spread across several
        workers leave the sub-task UNASSIGNABLE (and flagged for splitting).

        Args:
            task: Sub-task to match.
            exclude: Worker IDs to leave out.

        Returns:
            Tuple of (candidates, missing capability, reason). The last two
            are only meaningful when there are no candidates.
        """
        if not task.domain_tags:
            return [], UNSPECIFIED_CAPABILITY, "sub-task declares no domain tag"

        excluded = set(exclude)
        per_tag: dict[str, dict[str, WorkerDescriptor]] = {}
        for tag in task.domain_tags:
            found = self.registry.find_capable(tag, task.execution_mode)
            per_tag[tag] = {
                w.id: w
                for w in found
                if tag in w.capabilities()
                and w.supports(task.execution_mode)
                and w.id not in excluded
            }

        for tag, workers in per_tag.items():
            if not workers:
                return [], tag, f"no {task.execution_mode.value} worker advertises '{tag}'"

        common = set.intersection(*(set(w) for w in per_tag.values()))
        if not common:
            joined = "+".join(task.domain_tags)
            return [], joined, f"no single worker covers all of {task.domain_tags}"

        first = per_tag[task.domain_tags[0]]
        return sorted((first[wid] for wid in common), key=lambda w: w.id), "", ""

    def flag_granularity(
        self,
        graph: GraphStore,
        wave_plan: WavePlan,
        subtask_ids: Iterable[str],
    ) -> list[GranularityFlag]:
        """
        Compute advisory granularity flags.

        A small sub-task with no fan-in or fan-out that is alone in its wave
        is flagged for merge-upward review. A sub-task needing more than one
        domain is flagged for split-downward review.
        """
        wave_sizes = {
            sid: len(wave.subtask_ids) for wave in wave_plan.waves for sid in wave.subtask_ids
        }
        flags: list[GranularityFlag] = []

        for sid in subtask_ids:
            task = graph.get(sid)
            no_branching = len(graph.predecessors(sid)) <= 1 and len(graph.successors(sid)) <= 1
            if task.effort == Effort.SMALL and no_branching and wave_sizes.get(sid) == 1:
                flags.append(
                    GranularityFlag(
                        subtask_id=sid,
                        kind=FlagKind.MERGE_UPWARD,
                        reason="small sub-task alone in its wave with no branching",
                    )
                )
            if len(task.domain_tags) > 1:
                flags.append(
                    GranularityFlag(
                        subtask_id=sid,
                        kind=FlagKind.SPLIT_DOWNWARD,
                        reason=f"requires {len(task.domain_tags)} domains: {task.domain_tags}",
                    )
                )

        return flags
