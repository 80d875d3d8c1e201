"""Tests for the python workflow DSL"""
import pytest

from matrixci.dsl import job, on, sh, uses, wf
from matrixci.errors import ConfigurationError
from matrixci.model import EventKind


class TestDsl:

    def test_job_requires_steps(self) -> None:
        with pytest.raises(ConfigurationError):
            job("empty")

    def test_steps_list_comes_first(self) -> None:
        j = job("j", sh("b"), steps_list=[sh("a")])
        assert [s.run for s in j.steps] == ["a", "b"]

    def test_uses_inputs(self) -> None:
        step = uses("actions/checkout@v4", fetch_depth=0)
        assert step.with_ == {"fetch-depth": "0"}

    def test_triggers(self) -> None:
        definition = wf("w", job("j", sh("x")), on=["push", on("pull_request", branches=["main"])])
        assert [t.kind for t in definition.triggers] == [EventKind.PUSH, EventKind.PULL_REQUEST]
        assert definition.triggers[1].branches == ("main",)

    def test_unknown_trigger(self) -> None:
        with pytest.raises(ConfigurationError, match="unknown trigger kind"):
            wf("w", job("j", sh("x")), on=["release"])

    def test_duplicate_job_ids(self) -> None:
        with pytest.raises(ConfigurationError, match="Duplicate"):
            wf("w", job("j", sh("x")), job("j", sh("y")))

    def test_empty_axis_is_rejected_when_building_the_workflow(self) -> None:
        with pytest.raises(ConfigurationError, match="no values"):
            wf("w", job("j", sh("x"), matrix={"tc": []}))

    def test_needs_cycle(self) -> None:
        with pytest.raises(ConfigurationError, match="cycle"):
            wf("w", job("a", sh("a"), needs=["b"]), job("b", sh("b"), needs=["a"]))
