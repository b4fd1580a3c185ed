"""
Pipeline DAG validation and ordering.
"""

from typing import Dict, List

from dataplane.errors import PipelineConfigError
from dataplane.pipeline.models import TransformationStep


def validate_dag(steps: List[TransformationStep]) -> None:
    """
    Raise PipelineConfigError for unknown dependencies or cycles.
    """
    ids = {step.id for step in steps}
    for step in steps:
        for dependency in step.dependencies:
            if dependency not in ids:
                raise PipelineConfigError(f"Step '{step.id}' depends on unknown step '{dependency}'")
            if dependency == step.id:
                raise PipelineConfigError(f"Circular dependency detected involving step: {step.id}")

    # Depth-first search with an in-progress set to name a step on the cycle
    by_id = {step.id: step for step in steps}
    done: set = set()
    visiting: set = set()

    def visit(step_id: str) -> None:
        if step_id in done:
            return
        if step_id in visiting:
            raise PipelineConfigError(f"Circular dependency detected involving step: {step_id}")
        visiting.add(step_id)
        for dependency in by_id[step_id].dependencies:
            visit(dependency)
        visiting.discard(step_id)
        done.add(step_id)

    for step in steps:
        visit(step.id)


def execution_levels(steps: List[TransformationStep]) -> List[List[str]]:
    """
    Kahn levels: each level holds steps whose dependencies are all in
    earlier levels. Steps within a level keep declaration order.
    """
    validate_dag(steps)
    remaining: Dict[str, int] = {step.id: len(set(step.dependencies)) for step in steps}
    dependents: Dict[str, List[str]] = {step.id: [] for step in steps}
    for step in steps:
        for dependency in set(step.dependencies):
            dependents[dependency].append(step.id)

    declared = [step.id for step in steps]
    levels: List[List[str]] = []
    ready = [step_id for step_id in declared if remaining[step_id] == 0]
    while ready:
        levels.append(ready)
        unlocked = set()
        for step_id in ready:
            for dependent in dependents[step_id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    unlocked.add(dependent)
        ready = [step_id for step_id in declared if step_id in unlocked]
    return levels


def topological_order(steps: List[TransformationStep]) -> List[str]:
    return [step_id for level in execution_levels(steps) for step_id in level]
