"""Ordered, replayable stream of orchestrator progress events."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from typing import Any

from agentic_rag.types import Phase, ProgressStep, StepStatus

logger = logging.getLogger(__name__)


class ProgressStream:
    """Collects progress steps in emission order.

    A subscriber, when present, is pushed every step as it is emitted. Consumers
    that poll can iterate the stream at any time; iteration is a replay from the
    first event. Subscriber errors are logged and never affect the run.
    """

    def __init__(self, subscriber: Callable[[ProgressStep], None] | None = None) -> None:
        self._events: list[ProgressStep] = []
        self._subscriber = subscriber

    def emit(
        self,
        phase: Phase,
        status: StepStatus,
        message: str,
        *,
        details: str | None = None,
        progress: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProgressStep:
        if progress is not None:
            progress = max(0, min(100, progress))
        step = ProgressStep(
            phase=phase,
            status=status,
            message=message,
            timestamp=time.time(),
            sequence=len(self._events),
            details=details,
            metadata=metadata,
            progress=progress,
        )
        self._events.append(step)
        if self._subscriber is not None:
            try:
                self._subscriber(step)
            except Exception:
                logger.warning("progress subscriber raised; continuing", exc_info=True)
        return step

    def events(self) -> list[ProgressStep]:
        return list(self._events)

    def __iter__(self) -> Iterator[ProgressStep]:
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)
