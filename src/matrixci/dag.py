# dag.py
# Job dependency graph built from `needs:`.
from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .errors import ConfigurationError
from .model import JobDefinition


def build_dag(jobs: Iterable[JobDefinition]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Returns (dependents, pending) where dependents maps a job id to the ids
    that need it and pending counts the unmet needs of every job.
    """
    jobs = list(jobs)
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        raise ConfigurationError("Duplicate job ids found", ids=sorted({i for i in ids if ids.count(i) > 1}))

    dependents: Dict[str, Set[str]] = {i: set() for i in ids}
    pending: Dict[str, int] = {i: 0 for i in ids}
    for job in jobs:
        for upstream in dict.fromkeys(job.needs):
            if upstream not in dependents:
                raise ConfigurationError(f"Job '{job.id}' needs unknown job '{upstream}'", known=", ".join(ids))
            if upstream == job.id:
                raise ConfigurationError(f"Job '{job.id}' needs itself")
            dependents[upstream].add(job.id)
            pending[job.id] += 1
    return dependents, pending


def _find_cycle(dependents: Mapping[str, Set[str]], stuck: Iterable[str]) -> List[str]:
    """Walk upstream among the stuck jobs until one repeats; every stuck job has a stuck upstream."""
    stuck = set(stuck)
    upstream: Dict[str, Set[str]] = {j: set() for j in stuck}
    for job_id, children in dependents.items():
        for child in children:
            if job_id in stuck and child in stuck:
                upstream[child].add(job_id)

    node = min(stuck)
    seen: List[str] = []
    while node not in seen:
        seen.append(node)
        node = min(upstream[node])
    cycle = seen[seen.index(node):] + [node]
    cycle.reverse()
    return cycle


def stages(dependents: Mapping[str, Set[str]], pending: Mapping[str, int], order: Iterable[str]) -> List[List[str]]:
    """
    Group job ids into stages: every job's needs sit in earlier stages.
    Within a stage jobs keep `order` (definition order).
    """
    remaining = dict(pending)
    position = {job_id: n for n, job_id in enumerate(order)}
    ready = [j for j, count in remaining.items() if count == 0]
    result: List[List[str]] = []

    while ready:
        stage = sorted(ready, key=position.__getitem__)
        result.append(stage)
        ready = []
        for job_id in stage:
            del remaining[job_id]
            for child in dependents[job_id]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    ready.append(child)

    if remaining:
        cycle = _find_cycle(dependents, remaining)
        raise ConfigurationError("Job dependencies contain a cycle", cycle=" -> ".join(cycle))
    return result


def validate_dag(jobs: Iterable[JobDefinition]) -> List[List[str]]:
    jobs = list(jobs)
    dependents, pending = build_dag(jobs)
    return stages(dependents, pending, [j.id for j in jobs])
