from __future__ import annotations

from typing import Any

import pytest

from app.domain.errors import ConflictError, UpstreamError
from app.infra.saga import Saga


def _recording_saga(calls: list[str], fail_at: str | None = None, broken_compensation: str | None = None) -> Saga:
    def action(name: str):
        def _run(ctx: dict[str, Any]) -> str:
            if name == fail_at:
                raise RuntimeError(f"{name} exploded")
            calls.append(f"do:{name}")
            return f"{name}-result"

        return _run

    def compensation(name: str):
        def _undo(ctx: dict[str, Any]) -> None:
            if name == broken_compensation:
                raise RuntimeError(f"undo {name} exploded")
            calls.append(f"undo:{name}")

        return _undo

    saga = Saga("test")
    for name in ["a", "b", "c", "d"]:
        saga.step(name, action(name), compensation(name) if name != "c" else None)
    return saga


def test_successful_run_keeps_results_in_context() -> None:
    calls: list[str] = []
    result = _recording_saga(calls).run({"seed": 1})
    assert calls == ["do:a", "do:b", "do:c", "do:d"]
    assert result.completed == ["a", "b", "c", "d"]
    assert result.context["seed"] == 1
    assert result.context["b"] == "b-result"


def test_failure_compensates_completed_steps_in_reverse() -> None:
    calls: list[str] = []
    with pytest.raises(UpstreamError) as exc_info:
        _recording_saga(calls, fail_at="d").run()
    assert calls == ["do:a", "do:b", "do:c", "undo:b", "undo:a"]
    assert exc_info.value.step == "d"
    assert exc_info.value.to_payload()["step"] == "d"


def test_failure_on_first_step_compensates_nothing() -> None:
    calls: list[str] = []
    with pytest.raises(UpstreamError):
        _recording_saga(calls, fail_at="a").run()
    assert calls == []


def test_broken_compensation_does_not_mask_original_error() -> None:
    calls: list[str] = []
    with pytest.raises(UpstreamError) as exc_info:
        _recording_saga(calls, fail_at="d", broken_compensation="b").run()
    assert "d exploded" in str(exc_info.value)
    assert calls == ["do:a", "do:b", "do:c", "undo:a"]


def test_domain_errors_propagate_unchanged() -> None:
    undone: list[str] = []

    def conflict(_: dict[str, Any]) -> None:
        raise ConflictError("duplicate")

    saga = Saga("domain").step("first", lambda ctx: 1, lambda ctx: undone.append("first")).step("second", conflict)
    with pytest.raises(ConflictError):
        saga.run()
    assert undone == ["first"]
