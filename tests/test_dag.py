from __future__ import annotations

import pytest

from ciflow.dag import ancestors, build_dag, topo_levels, validate
from ciflow.dsl import job, sh
from ciflow.errors import DefinitionError


def _j(name, *needs):
    return job(name, sh("noop", "true"), needs=list(needs))


def test_levels_group_unordered_jobs():
    jobs = [_j("build"), _j("lint", "build"), _j("test", "build"), _j("package", "lint", "test")]
    assert validate(jobs) == [["build"], ["lint", "test"], ["package"]]


def test_build_dag_edges_and_indegree():
    adj, indeg = build_dag([_j("a"), _j("b", "a"), _j("c", "a", "b")])
    assert adj["a"] == {"b", "c"}
    assert adj["b"] == {"c"}
    assert indeg == {"a": 0, "b": 1, "c": 2}


def test_cycle_is_a_definition_error():
    jobs = [_j("a", "c"), _j("b", "a"), _j("c", "b")]
    with pytest.raises(DefinitionError) as exc:
        validate(jobs)
    assert "cycle" in exc.value.message
    assert "['a', 'b', 'c']" in exc.value.problems[0]


def test_duplicate_and_missing_names_reported_together():
    with pytest.raises(DefinitionError) as exc:
        build_dag([_j("a"), _j("a"), _j("b", "ghost")])
    problems = "\n".join(exc.value.problems)
    assert "duplicate job names: ['a']" in problems
    assert "missing job 'ghost'" in problems


def test_self_dependency_rejected():
    with pytest.raises(DefinitionError):
        build_dag([_j("a", "a")])


def test_topo_levels_does_not_mutate_input():
    adj, indeg = build_dag([_j("a"), _j("b", "a")])
    before = dict(indeg)
    topo_levels(adj, indeg)
    assert indeg == before


def test_ancestors_is_transitive():
    closure = ancestors([_j("a"), _j("b", "a"), _j("c", "b"), _j("d")])
    assert closure["c"] == {"a", "b"}
    assert closure["b"] == {"a"}
    assert closure["a"] == set()
    assert closure["d"] == set()
