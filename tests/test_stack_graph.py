"""Tests for stack_opr.graph module.

Covers plan ordering, deterministic tie-breaking, reverse order and
rejection of duplicate ids, unknown dependencies and cycles.
"""

import random
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from stack import ResourceDescriptor, ResourceKind
from stack_opr.errors import CycleError, ValidationError
from stack_opr.graph import Plan, build_plan


def _desc(rid, *deps, kind=ResourceKind.CLUSTER):
    return ResourceDescriptor(id=rid, kind=kind, depends_on=frozenset(deps))


def _kubeflow_descriptors():
    """Cluster, node role, Kubeflow, pipeline, mirroring the Kubeflow-on-EKS flow."""
    return [
        _desc('pipeline', 'kubeflow', kind=ResourceKind.PIPELINE),
        _desc('kubeflow', 'cluster', 'node-role', kind=ResourceKind.PLATFORM_STACK),
        _desc('node-role', 'cluster', kind=ResourceKind.IAM_ROLE),
        _desc('cluster'),
    ]


class TestPlanOrdering:
    """Tests for topological ordering."""

    def test_dependencies_precede_dependents(self):
        plan = build_plan(_kubeflow_descriptors())
        position = {rid: i for i, rid in enumerate(plan.ids)}
        for descriptor in plan:
            for dep in descriptor.depends_on:
                assert position[dep] < position[descriptor.id]

    def test_chain_order(self):
        plan = build_plan(_kubeflow_descriptors())
        assert plan.ids == ['cluster', 'node-role', 'kubeflow', 'pipeline']

    def test_ties_broken_by_id(self):
        plan = build_plan([_desc('c'), _desc('a'), _desc('b')])
        assert plan.ids == ['a', 'b', 'c']

    def test_independent_after_shared_root(self):
        plan = build_plan([
            _desc('s1', 'c1', kind=ResourceKind.SECRET),
            _desc('r1', 'c1', kind=ResourceKind.IAM_ROLE),
            _desc('c1'),
        ])
        assert plan.ids == ['c1', 'r1', 's1']

    def test_deterministic_regardless_of_input_order(self):
        descriptors = _kubeflow_descriptors() + [_desc('zz'), _desc('aa', 'zz')]
        expected = build_plan(descriptors).ids
        rng = random.Random(7)
        for _ in range(10):
            shuffled = list(descriptors)
            rng.shuffle(shuffled)
            assert build_plan(shuffled).ids == expected

    def test_empty_plan(self):
        plan = build_plan([])
        assert len(plan) == 0
        assert plan.ids == []

    def test_plan_contains_every_descriptor_once(self):
        descriptors = _kubeflow_descriptors()
        plan = build_plan(descriptors)
        assert sorted(plan.ids) == sorted(d.id for d in descriptors)


class TestPlanReverse:
    """Tests for Plan.reverse()."""

    def test_reverse_is_exact_mirror(self):
        plan = build_plan(_kubeflow_descriptors())
        assert plan.reverse().ids == list(reversed(plan.ids))

    def test_reverse_twice_is_identity(self):
        plan = build_plan(_kubeflow_descriptors())
        assert plan.reverse().reverse() == plan

    def test_get(self):
        plan = build_plan(_kubeflow_descriptors())
        assert plan.get('kubeflow').kind == ResourceKind.PLATFORM_STACK
        with pytest.raises(KeyError):
            plan.get('missing')

    def test_plan_is_immutable(self):
        plan = build_plan([_desc('a')])
        assert isinstance(plan, Plan)
        with pytest.raises(AttributeError):
            plan.order = ()


class TestPlanValidation:
    """Tests for invalid graphs."""

    def test_duplicate_id(self):
        with pytest.raises(ValidationError, match="Duplicate resource id: 'a'"):
            build_plan([_desc('a'), _desc('a')])

    def test_unknown_dependency(self):
        with pytest.raises(ValidationError, match="unknown resource"):
            build_plan([_desc('a', 'ghost')])

    def test_unknown_dependency_is_not_cycle(self):
        with pytest.raises(ValidationError) as exc_info:
            build_plan([_desc('a', 'ghost')])
        assert not isinstance(exc_info.value, CycleError)

    def test_two_node_cycle(self):
        with pytest.raises(CycleError) as exc_info:
            build_plan([_desc('a', 'b'), _desc('b', 'a')])
        assert exc_info.value.cycle == ['a', 'b', 'a']
        assert 'a -> b -> a' in str(exc_info.value)

    def test_self_cycle(self):
        with pytest.raises(CycleError) as exc_info:
            build_plan([_desc('a', 'a')])
        assert exc_info.value.cycle == ['a', 'a']

    def test_cycle_behind_acyclic_prefix(self):
        with pytest.raises(CycleError) as exc_info:
            build_plan([
                _desc('root'),
                _desc('x', 'root', 'z'),
                _desc('y', 'x'),
                _desc('z', 'y'),
            ])
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {'x', 'y', 'z'}
        assert 'root' not in cycle

    def test_cycle_is_validation_error(self):
        with pytest.raises(ValidationError):
            build_plan([_desc('a', 'b'), _desc('b', 'a')])
