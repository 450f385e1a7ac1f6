# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import DefinitionError
from .model import Job


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Returns (adj, indeg) where adj maps a job to the jobs that need it
    and indeg counts each job's distinct `needs`.

    Raises DefinitionError listing every duplicate name and missing dependency.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    problems: List[str] = []

    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        problems.append(f"duplicate job names: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs:
            if need == job.name:
                problems.append(f"job '{job.name}' needs itself")
                continue
            if need not in name_set:
                problems.append(f"job '{job.name}' needs missing job '{need}' (known jobs: {sorted(name_set)})")
                continue
            # Edge need -> job.name (need must finish before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    if problems:
        raise DefinitionError("invalid job graph", problems)

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Jobs inside one level have no ordering relation between them.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise DefinitionError("job graph has a cycle", [f"cycle among jobs: {remaining}"])

    return levels


def validate(jobs: Iterable[Job]) -> List[List[str]]:
    """Full load-time check: names, references, acyclicity. Returns the levels."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)


def ancestors(jobs: Iterable[Job]) -> Dict[str, Set[str]]:
    """Transitive `needs` closure for every job (assumes a validated DAG)."""
    by_name = {j.name: j for j in jobs}
    closure: Dict[str, Set[str]] = {}

    def visit(name: str) -> Set[str]:
        if name in closure:
            return closure[name]
        out: Set[str] = set()
        for need in by_name[name].needs:
            out.add(need)
            out |= visit(need)
        closure[name] = out
        return out

    for name in by_name:
        visit(name)
    return closure

