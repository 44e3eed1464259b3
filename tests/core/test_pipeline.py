# tests/core/test_pipeline.py
"""Tests for the graph-construction API."""

from pathlib import Path

import pytest

from seqflow.contracts import ChannelKind, ConfigurationError


class TestSources:
    def test_from_items_is_stream(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        ref = pipeline.from_items("samples", [("s1", "a"), ("s2", "b")])

        assert ref.kind == ChannelKind.STREAM
        assert [i.key for i in pipeline.sources["samples"].items] == ["s1", "s2"]

    def test_from_items_rejects_duplicate_keys(self) -> None:
        from seqflow.core.pipeline import Pipeline

        with pytest.raises(ConfigurationError, match="duplicate keys"):
            Pipeline().from_items("samples", [("s1", "a"), ("s1", "b")])

    def test_value_is_single_item(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        ref = pipeline.value("genome", Path("/ref/genome.fa"))

        assert ref.kind == ChannelKind.VALUE
        (item,) = pipeline.sources["genome"].items
        assert item.key is None

    def test_duplicate_source_rejected(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        pipeline.value("genome", "/a")
        with pytest.raises(ConfigurationError):
            pipeline.value("genome", "/b")


class TestTasks:
    def test_task_handle_kind_follows_inputs(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        reads = pipeline.from_items("reads", [("s1", "a")])
        genome = pipeline.value("genome", "/g")

        per_key = pipeline.task("align", "align {{ r }}", inputs={"r": reads}, outputs={"bam": "*.bam"})
        single = pipeline.task("index", "index {{ g }}", inputs={"g": genome}, outputs={"idx": "idx"})

        assert per_key.out("bam").kind == ChannelKind.STREAM
        assert single.out("idx").kind == ChannelKind.VALUE
        assert per_key["bam"].channel_id == "align.bam"

    def test_string_reference_kind(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        pipeline.from_items("reads", [("s1", "a")])
        pipeline.task("align", "align {{ r }}", inputs={"r": "reads"}, outputs={"bam": "*.bam"})
        count = pipeline.task("count", "count {{ b }}", inputs={"b": "align.bam"}, outputs={"c": "c"})

        assert count.out("c").kind == ChannelKind.STREAM

    def test_unknown_output_rejected(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        handle = pipeline.task("t", "true", outputs={"a": "a"})
        with pytest.raises(KeyError, match="no output 'b'"):
            handle.out("b")

    def test_duplicate_task_rejected(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        pipeline.task("t", "true")
        with pytest.raises(ConfigurationError, match="already defined"):
            pipeline.task("t", "true")

    def test_invalid_task_id_rejected(self) -> None:
        from seqflow.core.pipeline import Pipeline

        with pytest.raises(ConfigurationError, match="valid identifier"):
            Pipeline().task("bad-id", "true")

    def test_fallback_for_unknown_output_rejected(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        prebuilt = pipeline.value("prebuilt", "/idx")
        with pytest.raises(ConfigurationError, match="unknown outputs"):
            pipeline.task("index", "true", outputs={"idx": "idx"}, fallback={"other": prebuilt})


class TestCollect:
    def test_collect_members(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        reads = pipeline.from_items("reads", [("s1", "a")])
        qc = pipeline.task("qc", "qc {{ r }}", inputs={"r": reads}, outputs={"zip": "*.zip"})
        align = pipeline.task("align", "al {{ r }}", inputs={"r": reads}, outputs={"log": "*.log"})

        ref = pipeline.collect(qc.out("zip"), align.out("log"))

        assert ref.kind == ChannelKind.COLLECT
        assert ref.members == ("qc.zip", "align.log")

    def test_collect_of_collect_rejected(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        reads = pipeline.from_items("reads", [("s1", "a")])
        with pytest.raises(ConfigurationError, match="already collected"):
            pipeline.collect(pipeline.collect(reads))

    def test_collect_requires_a_channel(self) -> None:
        from seqflow.core.pipeline import Pipeline

        with pytest.raises(ConfigurationError):
            Pipeline().collect()

    def test_channel_ref_collect_view(self) -> None:
        from seqflow.core.pipeline import Pipeline

        pipeline = Pipeline()
        reads = pipeline.from_items("reads", [("s1", "a")])
        collected = reads.collect()

        assert collected.kind == ChannelKind.COLLECT
        assert collected.members == ("reads",)
        assert collected.collect() is collected
