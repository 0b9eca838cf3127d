"""Tests for the dependency graph: building, analysis, addresses and expansion."""

import pytest

from converge.declaration.loader import load_configuration
from converge.declaration.model import ResourceBlock
from converge.errors import CycleError, ExpressionError, GraphError, UnresolvedReferenceError
from converge.expressions.evaluator import EvalContext
from converge.expressions.values import PendingAttributes
from converge.graph.analyzer import GraphAnalyzer
from converge.graph.builder import GraphBuilder
from converge.graph.expansion import expand_block
from converge.graph.types import ResourceAddress
from converge.graph.values import InstanceValues
from converge.graph.visualizer import GraphVisualizer


@pytest.fixture
def graph(config_dir):
    return GraphBuilder(load_configuration(config_dir)).build()


class TestGraphBuilder:
    """Edges come from references, depends_on and count/for_each."""

    def test_nodes_cover_every_declaration(self, graph):
        node_types = {node_id: node.node_type for node_id, node in graph.nodes.items()}
        assert node_types["var.zone_count"] == "variable"
        assert node_types["test_network.main"] == "resource"
        assert node_types["data.test_zones.available"] == "data"
        assert node_types["output.subnet_ids"] == "output"

    def test_reference_edges(self, graph):
        assert graph.dependencies("test_subnet.private") == [
            "data.test_zones.available",
            "test_network.main",
            "var.zone_count",
        ]
        assert graph.dependents("test_subnet.private") == ["output.subnet_ids", "test_instance.app"]

    def test_count_reference_is_tagged(self, graph):
        count_edges = [
            edge
            for edge in graph.edges
            if edge.target == "test_subnet.private" and edge.metadata.get("meta_argument") == "count"
        ]
        assert [edge.source for edge in count_edges] == ["var.zone_count"]

    def test_edge_types(self, graph):
        types = {(edge.source, edge.target): edge.edge_type for edge in graph.edges}
        assert types[("var.env", "test_network.main")] == "variable_reference"
        assert types[("test_network.main", "test_subnet.private")] == "resource_reference"
        assert types[("data.test_zones.available", "test_subnet.private")] == "data_reference"

    def test_block_order_respects_dependencies(self, graph):
        order = graph.block_order()
        assert order.index("test_network.main") < order.index("test_subnet.private")
        assert order.index("data.test_zones.available") < order.index("test_subnet.private")
        assert order.index("test_subnet.private") < order.index("test_instance.app")
        assert all(not node.startswith(("var.", "output.")) for node in order)

    def test_transitive_queries(self, graph):
        assert "test_network.main" in graph.transitive_dependencies("test_instance.app")
        assert "output.network_arn" in graph.transitive_dependents("var.network_cidr")

    def test_resource_dependencies_see_through_locals(self, tmp_path, write_config):
        write_config(
            tmp_path,
            """
            locals:
              network_id: "${test_network.main.id}"
            resource:
              test_network:
                main: {}
              test_subnet:
                a:
                  network_id: "${local.network_id}"
            """,
        )
        graph = GraphBuilder(load_configuration(tmp_path)).build()
        assert graph.dependencies("test_subnet.a") == ["local.network_id"]
        assert graph.resource_dependencies("test_subnet.a") == ["test_network.main"]

    def test_explicit_depends_on(self, tmp_path, write_config):
        write_config(
            tmp_path,
            """
            resource:
              test_network:
                main: {}
              test_instance:
                app:
                  depends_on: [test_network.main]
            """,
        )
        graph = GraphBuilder(load_configuration(tmp_path)).build()
        edge = next(edge for edge in graph.edges if edge.target == "test_instance.app")
        assert edge.source == "test_network.main"
        assert edge.edge_type == "explicit_dependency"

    def test_cycle_is_rejected(self, tmp_path, write_config):
        write_config(
            tmp_path,
            """
            resource:
              test_instance:
                a:
                  peer: "${test_instance.b.id}"
                b:
                  peer: "${test_instance.a.id}"
            """,
        )
        with pytest.raises(CycleError) as exc:
            GraphBuilder(load_configuration(tmp_path)).build()
        cycle = exc.value.cycles[0]
        assert set(cycle) == {"test_instance.a", "test_instance.b"}

    def test_undeclared_reference(self, tmp_path, write_config):
        write_config(tmp_path, 'resource:\n  test_instance:\n    a:\n      subnet: "${test_subnet.missing.id}"\n')
        with pytest.raises(UnresolvedReferenceError) as exc:
            GraphBuilder(load_configuration(tmp_path)).build()
        assert exc.value.reference == "test_subnet.missing"
        assert exc.value.referrer == "test_instance.a"

    def test_undeclared_depends_on(self, tmp_path, write_config):
        write_config(tmp_path, "resource:\n  test_instance:\n    a:\n      depends_on: [test_subnet.nope]\n")
        with pytest.raises(UnresolvedReferenceError):
            GraphBuilder(load_configuration(tmp_path)).build()

    def test_unknown_function(self, tmp_path, write_config):
        write_config(tmp_path, 'resource:\n  test_instance:\n    a:\n      name: "${frobnicate(1)}"\n')
        with pytest.raises(ExpressionError, match="unknown function frobnicate"):
            GraphBuilder(load_configuration(tmp_path)).build()

    def test_count_index_without_count(self, tmp_path, write_config):
        write_config(tmp_path, 'resource:\n  test_instance:\n    a:\n      name: "n-${count.index}"\n')
        with pytest.raises(GraphError, match="count.index"):
            GraphBuilder(load_configuration(tmp_path)).build()

    def test_to_dict_metadata(self, graph):
        data = graph.to_dict()
        assert data["metadata"]["graph_type"] == "converge_dependency"
        assert data["metadata"]["stats"]["total_resources"] == 3
        assert data["metadata"]["stats"]["total_data_sources"] == 1
        assert len(data["edges"]) == len(graph.edges)


class TestGraphAnalyzer:
    """Pure algorithms over graph dicts."""

    GRAPH = {
        "nodes": [{"id": n} for n in ("a", "b", "c", "d")],
        "edges": [
            {"source": "a", "target": "b"},
            {"source": "a", "target": "c"},
            {"source": "b", "target": "d"},
            {"source": "c", "target": "d"},
        ],
    }

    def test_layers(self):
        assert GraphAnalyzer().identify_layers(self.GRAPH) == {0: ["a"], 1: ["b", "c"], 2: ["d"]}

    def test_topological_order(self):
        assert GraphAnalyzer().topological_order(self.GRAPH) == ["a", "b", "c", "d"]

    def test_reachable(self):
        analyzer = GraphAnalyzer()
        assert analyzer.reachable(self.GRAPH, ["b"], "downstream") == {"d"}
        assert analyzer.reachable(self.GRAPH, ["d"], "upstream") == {"a", "b", "c"}

    def test_detect_cycles(self):
        graph = {
            "nodes": [{"id": "x"}, {"id": "y"}],
            "edges": [{"source": "x", "target": "y"}, {"source": "y", "target": "x"}],
        }
        cycles = GraphAnalyzer().detect_cycles(graph)
        assert len(cycles) == 1
        assert cycles[0]["size"] == 2
        assert GraphAnalyzer().detect_cycles(self.GRAPH) == []

    def test_summary(self):
        summary = GraphAnalyzer().get_graph_summary(self.GRAPH)
        assert summary["node_count"] == 4
        assert summary["depth"] == 3
        assert summary["widest_layer"] == 2


class TestResourceAddress:
    def test_parse_forms(self):
        assert ResourceAddress.parse("aws_vpc.main") == ResourceAddress("managed", "aws_vpc", "main")
        assert ResourceAddress.parse("aws_subnet.private[1]").key == 1
        assert ResourceAddress.parse('aws_iam_user.u["alice"]').key == "alice"
        data = ResourceAddress.parse("data.aws_availability_zones.available")
        assert data.mode == "data"
        assert data.block == "data.aws_availability_zones.available"

    def test_str_round_trip(self):
        for text in ("aws_vpc.main", "aws_subnet.private[0]", 'aws_iam_user.u["a b"]'):
            assert str(ResourceAddress.parse(text)) == text

    def test_invalid(self):
        with pytest.raises(GraphError, match="invalid resource address"):
            ResourceAddress.parse("not an address")

    def test_sort_key_orders_indexes_numerically(self):
        addresses = [ResourceAddress.parse(f"aws_subnet.private[{i}]") for i in (10, 2, 1)]
        assert [a.key for a in sorted(addresses, key=ResourceAddress.sort_key)] == [1, 2, 10]


class TestExpansion:
    """count / for_each produce addressed instances."""

    def block(self, **meta):
        return ResourceBlock(mode="managed", type="test_subnet", name="s", config={}, **meta)

    def test_single(self):
        expansion = expand_block(self.block(), EvalContext())
        assert expansion.kind == "single"
        assert expansion.keys == [None]

    def test_count_from_variable(self):
        expansion = expand_block(self.block(count="${var.n}"), EvalContext(variables={"n": 3}))
        assert expansion.keys == [0, 1, 2]
        assert [i.count_index for i in expansion.instances] == [0, 1, 2]
        assert str(expansion.instances[2].address) == "test_subnet.s[2]"

    def test_count_zero(self):
        assert expand_block(self.block(count=0), EvalContext()).instances == []

    def test_for_each_map_sorted_by_key(self):
        expansion = expand_block(self.block(for_each={"b": 2, "a": 1}), EvalContext())
        assert expansion.keys == ["a", "b"]
        assert expansion.instances[1].each_value == 2

    def test_for_each_set_of_strings(self):
        expansion = expand_block(self.block(for_each=["web", "api", "web"]), EvalContext())
        assert expansion.keys == ["api", "web"]

    @pytest.mark.parametrize("count", [-1, True, "lots", 1.5])
    def test_invalid_count(self, count):
        with pytest.raises(GraphError, match="count"):
            expand_block(self.block(count=count), EvalContext())

    def test_count_limit(self):
        with pytest.raises(GraphError, match="exceeds the limit"):
            expand_block(self.block(count=5), EvalContext(), max_instances=4)

    def test_count_unknown_at_plan_time(self):
        ctx = EvalContext(resource_resolver=lambda type_, name: PendingAttributes(f"{type_}.{name}"))
        with pytest.raises(GraphError, match="only known after apply"):
            expand_block(self.block(count="${test_network.main.size}"), ctx)

    def test_for_each_list_of_numbers(self):
        with pytest.raises(GraphError, match="strings only"):
            expand_block(self.block(for_each=[1, 2]), EvalContext())


class TestInstanceValues:
    def test_block_value_shapes(self):
        values = InstanceValues()
        values.set_expansion("a.single", "single", [None])
        values.set(ResourceAddress.parse("a.single"), {"id": "1"})
        values.set_expansion("a.counted", "count", [0, 1])
        values.set(ResourceAddress.parse("a.counted[1]"), {"id": "y"})
        values.set(ResourceAddress.parse("a.counted[0]"), {"id": "x"})
        values.set_expansion("a.each", "for_each", ["k"])
        values.set(ResourceAddress.parse('a.each["k"]'), {"id": "z"})

        assert values.block_value("a.single") == {"id": "1"}
        assert values.block_value("a.counted") == [{"id": "x"}, {"id": "y"}]
        assert values.block_value("a.each") == {"k": {"id": "z"}}

    def test_missing_instance(self):
        values = InstanceValues()
        values.set_expansion("a.counted", "count", [0])
        with pytest.raises(GraphError, match="no value"):
            values.block_value("a.counted")
        with pytest.raises(GraphError, match="not been evaluated"):
            values.block_value("a.other")


def test_dot_export_quotes_addresses(graph):
    dot = GraphVisualizer().generate_dot(graph.to_dict(), actions={"test_network.main": "create"})
    assert dot.startswith("digraph G {")
    assert '"test_subnet.private"' in dot
    assert '"test_network.main" -> "test_subnet.private"' in dot
    assert "(create)" in dot
