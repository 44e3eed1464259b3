# tests/core/test_dag.py
"""Tests for DAG construction, validation and operations."""

import pytest

from seqflow.contracts import (
    ChannelItem,
    ChannelKind,
    GraphValidationError,
    SkipReason,
    TaskDescriptor,
    TemplateError,
)
from seqflow.core.dag import ExecutionGraph, NodeInfo, ProducerRef, build_graph
from seqflow.core.pipeline import Pipeline


def _node(instance_id: str) -> NodeInfo:
    return NodeInfo(
        instance_id=instance_id,
        task_id=instance_id,
        key=None,
        descriptor=TaskDescriptor(task_id=instance_id, command="true"),
    )


def three_sample_pipeline() -> Pipeline:
    pipeline = Pipeline("three")
    samples = pipeline.from_items("samples", [("s1", "a"), ("s2", "b"), ("s3", "c")])
    t1 = pipeline.task("t1", "echo {{ x }}", inputs={"x": samples}, outputs={"out": "*.txt"})
    pipeline.task(
        "t2",
        "cat {{ all | shquote }}",
        inputs={"all": pipeline.collect(t1.out("out"))},
        outputs={"merged": "merged.txt"},
    )
    return pipeline


class TestExecutionGraph:
    """Low-level graph operations."""

    def test_empty_dag(self) -> None:
        graph = ExecutionGraph()
        assert graph.node_count == 0
        assert graph.edge_count == 0

    def test_add_node_and_edge(self) -> None:
        graph = ExecutionGraph()
        graph.add_node(_node("a"))
        graph.add_node(_node("b"))
        graph.add_edge("a", "b", label="x", kind=ChannelKind.VALUE)

        assert graph.has_node("a")
        assert graph.edge_count == 1
        assert graph.successors("a") == {"b"}
        assert graph.predecessors("b") == {"a"}

    def test_parallel_labels_share_one_edge(self) -> None:
        graph = ExecutionGraph()
        graph.add_node(_node("a"))
        graph.add_node(_node("b"))
        graph.add_edge("a", "b", label="x")
        graph.add_edge("a", "b", label="y")

        ((_, _, data),) = graph.get_edges()
        assert data["labels"] == ("x", "y")

    def test_duplicate_node_rejected(self) -> None:
        graph = ExecutionGraph()
        graph.add_node(_node("a"))
        with pytest.raises(GraphValidationError, match="Duplicate"):
            graph.add_node(_node("a"))

    def test_validate_raises_on_cycle(self) -> None:
        graph = ExecutionGraph()
        graph.add_node(_node("a"))
        graph.add_node(_node("b"))
        graph.add_edge("a", "b", label="x")
        graph.add_edge("b", "a", label="y")

        assert graph.is_acyclic() is False
        with pytest.raises(GraphValidationError, match="cycle"):
            graph.validate()

    def test_topological_order(self) -> None:
        graph = ExecutionGraph()
        for name in ("sink", "t2", "t1", "source"):
            graph.add_node(_node(name))
        graph.add_edge("source", "t1", label="x")
        graph.add_edge("t1", "t2", label="x")
        graph.add_edge("t2", "sink", label="x")

        assert graph.topological_order() == ["source", "t1", "t2", "sink"]

    def test_descendants(self) -> None:
        graph = ExecutionGraph()
        for name in ("a", "b", "c", "d"):
            graph.add_node(_node(name))
        graph.add_edge("a", "b", label="x")
        graph.add_edge("b", "c", label="x")

        assert graph.descendants("a") == {"b", "c"}
        assert graph.descendants("d") == set()

    def test_get_node_info_unknown(self) -> None:
        with pytest.raises(KeyError):
            ExecutionGraph().get_node_info("missing")


    def test_to_dict_lists_instances_and_edges(self) -> None:
        import json

        graph = build_graph(three_sample_pipeline())

        exported = json.loads(json.dumps(graph.to_dict()))

        assert exported["nodes"][0] == {
            "instance_id": "t1[s1]",
            "task_id": "t1",
            "key": "s1",
            "skip_reason": None,
        }
        assert [n["instance_id"] for n in exported["nodes"]][-1] == "t2"
        assert exported["edges"] == [
            {"from": f"t1[{key}]", "to": "t2", "labels": ["all"], "kind": "collect"}
            for key in ("s1", "s2", "s3")
        ]


class TestInstanceMaterialization:
    """Building instance graphs from pipelines."""

    def test_per_key_and_singleton_instances(self) -> None:
        graph = build_graph(three_sample_pipeline())

        assert [i.instance_id for i in graph.instances_of("t1")] == ["t1[s1]", "t1[s2]", "t1[s3]"]
        assert [i.instance_id for i in graph.instances_of("t2")] == ["t2"]
        assert graph.edge_count == 3

    def test_collect_cardinality_fixed_at_build(self) -> None:
        graph = build_graph(three_sample_pipeline())

        (binding,) = graph.get_node_info("t2").bindings
        assert binding.kind == ChannelKind.COLLECT
        assert binding.expected_producers == 3
        assert binding.producer_ids == ("t1[s1]", "t1[s2]", "t1[s3]")

    def test_collect_over_empty_stream_has_zero_producers(self) -> None:
        pipeline = Pipeline()
        samples = pipeline.from_items("samples", [])
        t1 = pipeline.task("t1", "echo {{ x }}", inputs={"x": samples}, outputs={"out": "o"})
        pipeline.task("t2", "cat {{ all }}", inputs={"all": pipeline.collect(t1.out("out"))})

        graph = build_graph(pipeline)

        assert graph.instances_of("t1") == []
        (binding,) = graph.get_node_info("t2").bindings
        assert binding.expected_producers == 0

    def test_stream_edges_join_key_by_key(self) -> None:
        pipeline = Pipeline()
        samples = pipeline.from_items("samples", [("s1", "a"), ("s2", "b")])
        align = pipeline.task("align", "al {{ r }}", inputs={"r": samples}, outputs={"bam": "b"})
        pipeline.task("count", "ct {{ bam }}", inputs={"bam": align.out("bam")}, outputs={"c": "c"})

        graph = build_graph(pipeline)

        assert graph.predecessors("count[s1]") == {"align[s1]"}
        assert graph.predecessors("count[s2]") == {"align[s2]"}
        (binding,) = graph.get_node_info("count[s2]").bindings
        assert binding.deliveries == (ProducerRef("align[s2]", "bam", "align.bam", "s2"),)

    def test_value_input_is_broadcast(self) -> None:
        pipeline = Pipeline()
        samples = pipeline.from_items("samples", [("s1", "a"), ("s2", "b")])
        genome = pipeline.value("genome", "/g.fa")
        index = pipeline.task("index", "ix {{ g }}", inputs={"g": genome}, outputs={"idx": "idx"})
        pipeline.task(
            "align",
            "al {{ r }} {{ idx }}",
            inputs={"r": samples, "idx": index.out("idx")},
            outputs={"bam": "b"},
        )

        graph = build_graph(pipeline)

        assert graph.successors("index") == {"align[s1]", "align[s2]"}
        (_, _, data) = next(e for e in graph.get_edges() if e[1] == "align[s1]")
        assert data["labels"] == ("idx",)
        assert data["kind"] == ChannelKind.VALUE

    def test_string_reference_to_source_name(self) -> None:
        pipeline = Pipeline()
        pipeline.value("genome", "/ref/g.fa")
        pipeline.task("index", "ix {{ g }}", inputs={"g": "genome"})

        graph = build_graph(pipeline)

        (binding,) = graph.get_node_info("index").bindings
        assert binding.channel_id == "genome"
        assert binding.deliveries[0].value == "/ref/g.fa"

    def test_params_prefixed_reference_is_not_a_namespace(self) -> None:
        pipeline = Pipeline()
        pipeline.value("genome", "/ref/g.fa")
        pipeline.task("index", "ix {{ g }}", inputs={"g": "params.genome"})

        with pytest.raises(GraphValidationError, match="unknown channel 'params.genome'"):
            build_graph(pipeline)

    def test_source_items_bound_directly(self) -> None:
        pipeline = Pipeline()
        samples = pipeline.from_items("samples", [("s1", "a")])
        pipeline.task("t", "echo {{ x }}", inputs={"x": samples})

        graph = build_graph(pipeline)

        (binding,) = graph.get_node_info("t[s1]").bindings
        assert binding.deliveries == (ChannelItem("s1", "a", "samples"),)
        assert binding.expected_producers == 0

    def test_multiple_streams_joined_by_key(self) -> None:
        pipeline = Pipeline()
        left = pipeline.from_items("left", [("s1", 1), ("s2", 2)])
        right = pipeline.from_items("right", [("s2", 3), ("s3", 4)])
        pipeline.task("join", "echo {{ l }} {{ r }}", inputs={"l": left, "r": right})

        graph = build_graph(pipeline)

        assert [i.key for i in graph.instances_of("join")] == ["s2"]

    def test_mixed_collect_is_tagged(self) -> None:
        pipeline = Pipeline()
        samples = pipeline.from_items("samples", [("s1", "a"), ("s2", "b")])
        qc = pipeline.task("qc", "qc {{ r }}", inputs={"r": samples}, outputs={"zip": "z"})
        align = pipeline.task("align", "al {{ r }}", inputs={"r": samples}, outputs={"log": "l"})
        pipeline.task(
            "report",
            "mq {{ all }}",
            inputs={"all": pipeline.collect(qc.out("zip"), align.out("log"))},
        )

        graph = build_graph(pipeline)

        (binding,) = graph.get_node_info("report").bindings
        assert [(d.tag, d.key) for d in binding.deliveries] == [
            ("qc.zip", "s1"),
            ("qc.zip", "s2"),
            ("align.log", "s1"),
            ("align.log", "s2"),
        ]


class TestBuildValidation:
    """Build-time errors are raised before any scheduling."""

    def test_dangling_reference(self) -> None:
        pipeline = Pipeline()
        pipeline.task("t", "echo {{ x }}", inputs={"x": "nowhere.out"})

        with pytest.raises(GraphValidationError, match="unknown channel 'nowhere.out'"):
            build_graph(pipeline)

    def test_reference_to_undeclared_output(self) -> None:
        pipeline = Pipeline()
        pipeline.task("a", "true", outputs={"out": "o"})
        pipeline.task("b", "echo {{ x }}", inputs={"x": "a.missing"})

        with pytest.raises(GraphValidationError, match="a.missing"):
            build_graph(pipeline)

    def test_cycle_detected(self) -> None:
        pipeline = Pipeline()
        pipeline.task("a", "echo {{ x }}", inputs={"x": "b.out"}, outputs={"out": "o"})
        pipeline.task("b", "echo {{ x }}", inputs={"x": "a.out"}, outputs={"out": "o"})

        with pytest.raises(GraphValidationError, match="cycle") as exc_info:
            build_graph(pipeline)
        assert "a -> b" in str(exc_info.value) or "b -> a" in str(exc_info.value)

    def test_self_loop_detected(self) -> None:
        pipeline = Pipeline()
        pipeline.task("a", "echo {{ x }}", inputs={"x": "a.out"}, outputs={"out": "o"})

        with pytest.raises(GraphValidationError, match="cycle"):
            build_graph(pipeline)

    def test_undeclared_template_variable(self) -> None:
        pipeline = Pipeline()
        samples = pipeline.from_items("samples", [("s1", "a")])
        pipeline.task("t", "echo {{ x }} {{ y }}", inputs={"x": samples})

        with pytest.raises(TemplateError, match="'y'"):
            build_graph(pipeline)


class TestConditions:
    """Conditional tasks select alternative subgraphs at build time."""

    def _pipeline(self, run_index: bool, with_fallback: bool = True) -> Pipeline:
        pipeline = Pipeline()
        samples = pipeline.from_items("samples", [("s1", "a"), ("s2", "b")])
        genome = pipeline.value("genome", "/g.fa")
        prebuilt = pipeline.value("prebuilt", "/prebuilt")
        index = pipeline.task(
            "index",
            "ix {{ g }}",
            inputs={"g": genome},
            outputs={"idx": "idx"},
            condition=lambda: run_index,
            fallback={"idx": prebuilt} if with_fallback else {},
        )
        pipeline.task(
            "align",
            "al {{ r }} {{ idx }}",
            inputs={"r": samples, "idx": index.out("idx")},
            outputs={"bam": "b"},
        )
        return pipeline

    def test_condition_true_builds_index(self) -> None:
        graph = build_graph(self._pipeline(run_index=True))

        assert graph.get_node_info("index").skip_reason is None
        assert graph.predecessors("align[s1]") == {"index"}

    def test_condition_false_rewires_to_fallback(self) -> None:
        graph = build_graph(self._pipeline(run_index=False))

        assert graph.get_node_info("index").skip_reason == SkipReason.CONDITION
        assert graph.predecessors("align[s1]") == set()
        binding = graph.get_node_info("align[s1]").bindings[1]
        assert binding.deliveries == (ChannelItem(None, "/prebuilt", "prebuilt"),)

    def test_condition_false_without_fallback_fails(self) -> None:
        with pytest.raises(GraphValidationError, match="no fallback"):
            build_graph(self._pipeline(run_index=False, with_fallback=False))

    def test_condition_evaluated_once(self) -> None:
        calls: list[int] = []

        def predicate() -> bool:
            calls.append(1)
            return True

        pipeline = Pipeline()
        pipeline.task("t", "true", condition=predicate)
        build_graph(pipeline)

        assert calls == [1]

    def test_unconsumed_skipped_output_is_fine(self) -> None:
        pipeline = Pipeline()
        pipeline.task("t", "true", outputs={"o": "o"}, condition=lambda: False)

        graph = build_graph(pipeline)

        assert graph.get_node_info("t").skip_reason == SkipReason.CONDITION
