"""Tests for env_opr.graph module."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import load_workspace_config
from env_opr.graph import build_graph
from errors import CyclicDependencyError, ServiceNotFoundError
from registry import ServiceRegistry

from conftest import write_workspace


def _catalog(tmp_path, services):
    root = write_workspace(tmp_path, services)
    return ServiceRegistry(load_workspace_config(root)).load()


class TestBuildGraph:
    """Tests for dependency graph construction."""

    def test_scenario_graph(self, scenario):
        _, catalog, _ = scenario
        graph = build_graph(catalog, 'api')

        assert graph.root == 'api'
        assert graph.names == ['api', 'networking', 'database']
        assert graph.dependencies_of('api') == ['networking', 'database']
        assert graph.dependencies_of('database') == ['networking']
        assert sorted(n.name for n in graph.get_node('networking').dependents) == ['api', 'database']

    def test_only_reachable_nodes(self, scenario):
        _, catalog, _ = scenario
        graph = build_graph(catalog, 'database')
        assert graph.names == ['database', 'networking']
        assert 'api' not in graph

    def test_single_node(self, scenario):
        _, catalog, _ = scenario
        graph = build_graph(catalog, 'networking')
        assert len(graph) == 1
        assert graph.get_node('networking').is_leaf

    def test_deterministic(self, scenario):
        _, catalog, _ = scenario
        first = build_graph(catalog, 'api')
        second = build_graph(catalog, 'api')
        assert first.names == second.names
        assert first.edges() == second.edges()

    def test_unknown_root(self, scenario):
        _, catalog, _ = scenario
        with pytest.raises(ServiceNotFoundError):
            build_graph(catalog, 'web')

    def test_get_node_unknown(self, scenario):
        _, catalog, _ = scenario
        graph = build_graph(catalog, 'api')
        with pytest.raises(KeyError):
            graph.get_node('web')


class TestCycleDetection:
    """Tests for cycle detection."""

    def test_two_node_cycle(self, tmp_path):
        catalog = _catalog(tmp_path, {
            'a': 'name: A\ndepends: [B]\n',
            'b': 'name: B\ndepends: [A]\n',
        })
        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(catalog, 'A')

        assert exc_info.value.cycle == ['A', 'B', 'A']
        assert 'A -> B -> A' in str(exc_info.value)
        assert exc_info.value.code == 'E104'

    def test_self_dependency(self, tmp_path):
        catalog = _catalog(tmp_path, {'a': 'name: A\ndepends: [A]\n'})
        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(catalog, 'A')
        assert exc_info.value.cycle == ['A', 'A']

    def test_cycle_below_root(self, tmp_path):
        catalog = _catalog(tmp_path, {
            'root': 'name: root\ndepends: [x]\n',
            'x': 'name: x\ndepends: [y]\n',
            'y': 'name: y\ndepends: [z]\n',
            'z': 'name: z\ndepends: [x]\n',
        })
        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(catalog, 'root')
        assert exc_info.value.cycle == ['x', 'y', 'z', 'x']

    def test_diamond_is_not_a_cycle(self, tmp_path):
        catalog = _catalog(tmp_path, {
            'top': 'name: top\ndepends: [left, right]\n',
            'left': 'name: left\ndepends: [base]\n',
            'right': 'name: right\ndepends: [base]\n',
            'base': 'name: base\n',
        })
        graph = build_graph(catalog, 'top')
        assert len(graph) == 4
