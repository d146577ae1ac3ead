import pytest
from knowflow.core.exceptions import (
    CyclicGraphError,
    DanglingInputSourceError,
    DuplicateNodeError,
    InvalidEdgeError,
)
from knowflow.engine.graph import WorkflowGraph
from knowflow.schemas.workflow import WorkflowEdge, WorkflowNode

def build(nodes, edges):
    return WorkflowGraph(
        [WorkflowNode.model_validate(n) for n in nodes],
        [WorkflowEdge(source=s, target=t) for s, t in edges],
    )

def node(node_id, **extra):
    return {"id": node_id, "type": "trigger_manual", **extra}

def test_workflow_graph_init():
    graph = build([node("node1"), node("node2")], [("node1", "node2")])
    assert len(graph.nodes) == 2
    assert len(graph.edges) == 1
    assert graph.adj["node1"] == ["node2"]
    assert graph.rev_adj["node2"] == ["node1"]
    assert graph.get_next_nodes("node1") == ["node2"]
    assert graph.get_predecessors("node2") == ["node1"]

def test_topo_sort():
    graph = build([node("node3"), node("node1"), node("node2")], [("node1", "node2"), ("node2", "node3")])
    assert graph.get_topo_sort() == ["node1", "node2", "node3"]

def test_topo_sort_breaks_ties_by_declaration_order():
    graph = build([node("c"), node("a"), node("b"), node("d")], [("c", "d"), ("a", "d")])
    assert graph.get_topo_sort() == ["c", "a", "b", "d"]

def test_cycle_detected_with_offending_nodes():
    graph = build([node("a"), node("b"), node("c"), node("d")], [("a", "b"), ("b", "c"), ("c", "b"), ("c", "d")])
    with pytest.raises(CyclicGraphError) as exc_info:
        graph.validate()
    # d is only blocked by the cycle, it is reported as unsorted too
    assert exc_info.value.node_ids == ["b", "c", "d"]

def test_self_loop_is_a_cycle():
    graph = build([node("a")], [("a", "a")])
    with pytest.raises(CyclicGraphError):
        graph.get_topo_sort()

def test_edge_to_unknown_node():
    graph = build([node("a")], [("a", "ghost")])
    with pytest.raises(InvalidEdgeError) as exc_info:
        graph.validate()
    assert exc_info.value.target == "ghost"

def test_duplicate_node_ids():
    graph = build([node("a"), node("a")], [])
    with pytest.raises(DuplicateNodeError):
        graph.validate()

def test_input_source_must_be_an_ancestor():
    sources = [{"type": "previous_node", "nodeId": "b"}]
    graph = build([node("a"), node("b"), node("c", inputSources=sources)], [("a", "c")])
    with pytest.raises(DanglingInputSourceError) as exc_info:
        graph.validate()
    assert exc_info.value.node_id == "c"
    assert exc_info.value.source_node_id == "b"

def test_input_source_from_indirect_ancestor_is_valid():
    sources = [{"type": "previous_node", "nodeId": "a"}]
    graph = build([node("a"), node("b"), node("c", inputSources=sources)], [("a", "b"), ("b", "c")])
    graph.validate()

def test_collect_errors_reports_everything():
    sources = [{"type": "previous_node", "nodeId": "missing"}]
    graph = build([node("a"), node("a"), node("b", inputSources=sources)], [("a", "ghost")])
    errors = graph.collect_errors()
    assert any("Duplicate node id" in e for e in errors)
    assert any("non-existent node" in e for e in errors)
    assert any("'missing'" in e for e in errors)

def test_execution_order_excludes_disabled_nodes():
    graph = build([node("a"), node("b", enabled=False), node("c")], [("a", "b"), ("b", "c")])
    assert graph.execution_order() == ["a", "c"]
    assert graph.disabled_nodes() == ["b"]
    assert graph.active_dependencies("c") == {"a"}

def test_parallel_levels():
    graph = build(
        [node("root"), node("left"), node("right"), node("join"), node("off", enabled=False)],
        [("root", "left"), ("root", "right"), ("left", "join"), ("right", "join"), ("root", "off")],
    )
    assert graph.parallel_levels() == [["root"], ["left", "right"], ["join"]]

def test_remove_node_cascades_edges():
    graph = build([node("a"), node("b"), node("c")], [("a", "b"), ("b", "c"), ("a", "c")])
    nodes, edges = graph.remove_node("b")
    assert [n.id for n in nodes] == ["a", "c"]
    assert [(e.source, e.target) for e in edges] == [("a", "c")]

def test_remove_node_drops_input_sources_reading_from_it():
    sources = [{"type": "previous_node", "nodeId": "a"}, {"type": "static", "data": ["seed"]}]
    graph = build([node("a"), node("b"), node("c", inputSources=sources)], [("a", "b"), ("b", "c")])
    nodes, edges = graph.remove_node("a")

    remaining = build([n.model_dump() for n in nodes], [(e.source, e.target) for e in edges])
    assert [s.type.value for s in remaining.nodes["c"].input_sources] == ["static"]
    assert remaining.collect_errors() == []
    # The graph it came from is left untouched
    assert len(graph.nodes["c"].input_sources) == 2
