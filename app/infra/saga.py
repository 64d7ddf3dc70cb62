"""Sequential steps with compensating actions.

Not a transaction: a crash between two steps leaves whatever the completed
steps produced. On a handled failure the compensations of the completed steps
run newest first; a failing compensation is logged and the remaining ones
still run. Domain errors propagate unchanged; anything else surfaces as an
``UpstreamError`` naming the failed step.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from app.domain.errors import OrderTrackingError, UpstreamError

logger = logging.getLogger(__name__)

Action = Callable[[dict[str, Any]], Any]
Compensation = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class SagaStep:
    name: str
    action: Action
    compensation: Compensation | None = None


@dataclass
class SagaResult:
    context: dict[str, Any]
    completed: list[str] = field(default_factory=list)


class Saga:
    def __init__(self, name: str) -> None:
        self.name = name
        self._steps: list[SagaStep] = []

    def step(self, name: str, action: Action, compensation: Compensation | None = None) -> Saga:
        self._steps.append(SagaStep(name=name, action=action, compensation=compensation))
        return self

    @property
    def steps(self) -> list[SagaStep]:
        return list(self._steps)

    def run(self, context: dict[str, Any] | None = None) -> SagaResult:
        ctx: dict[str, Any] = {} if context is None else context
        completed: list[SagaStep] = []
        for step in self._steps:
            try:
                ctx[step.name] = step.action(ctx)
            except Exception as exc:
                logger.warning("saga %s failed at step %s: %s", self.name, step.name, exc)
                self._compensate(completed, ctx)
                if isinstance(exc, OrderTrackingError):
                    raise
                raise UpstreamError(f"{step.name} failed: {exc}", step=step.name) from exc
            completed.append(step)
            logger.debug("saga %s completed step %s", self.name, step.name)
        return SagaResult(context=ctx, completed=[step.name for step in completed])

    def _compensate(self, completed: list[SagaStep], ctx: dict[str, Any]) -> None:
        for step in reversed(completed):
            if step.compensation is None:
                continue
            try:
                step.compensation(ctx)
            except Exception:
                logger.exception("saga %s compensation for %s failed", self.name, step.name)
