"""Deterministic local handlers for CLI demos and integration tests."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from content_factory.errors import TransientWorkerError, UnitFailure, WorkerFatal
from content_factory.queue.backend.base import WorkerCallbacks
from content_factory.tasks.allocation import CONTENT_CATEGORIES
from content_factory.tasks.models import TaskStatus, TaskView, UnitResult, UnitStatus

RESEARCH_STARTED_PROGRESS = 5
RESEARCH_DONE_PROGRESS = 20
GENERATION_STARTED_PROGRESS = 25
GENERATION_SPAN = 70


@dataclass(slots=True)
class EchoContentHandler:
    """Walks a content task through research and generation without doing real work.

    ``failing_units`` holds 1-based unit ordinals (in allocation order) that
    report FAILED. ``transient_failures`` makes the first N runs raise a
    retryable error; ``fatal_error`` makes every run raise ``WorkerFatal``.
    """

    failing_units: frozenset[int] = frozenset()
    transient_failures: int = 0
    fatal_error: str | None = None
    words_per_unit: int | None = None
    runs: int = field(default=0, init=False)

    def run(self, task: TaskView, callbacks: WorkerCallbacks) -> None:
        self.runs += 1
        if self.fatal_error is not None:
            raise WorkerFatal(self.fatal_error)
        if self.runs <= self.transient_failures:
            raise TransientWorkerError(f"Simulated transient failure on run {self.runs}")

        params = task.params
        callbacks.progress(RESEARCH_STARTED_PROGRESS, status=TaskStatus.RESEARCHING)
        callbacks.progress(
            RESEARCH_DONE_PROGRESS,
            status=TaskStatus.RESEARCH_COMPLETE,
            research_payload={
                "niche": params.get("niche", ""),
                "keywords": _keywords(str(params.get("niche", "")), task.units_expected),
            },
        )
        callbacks.progress(GENERATION_STARTED_PROGRESS, status=TaskStatus.GENERATING)

        words = self.words_per_unit or int(params.get("target_word_count", 1200))
        unit_ids = _unit_ids(params.get("allocations", {}), task.units_expected)
        for ordinal, (unit_id, category) in enumerate(unit_ids, start=1):
            if ordinal in self.failing_units:
                callbacks.unit_failure(
                    UnitFailure(unit_id, f"Simulated failure for unit {ordinal}"),
                    category=category,
                )
            else:
                callbacks.unit_result(
                    UnitResult(
                        unit_id=unit_id,
                        outcome=UnitStatus.COMPLETED,
                        category=category,
                        size=words,
                        generation_time_ms=10 * ordinal,
                        result={"title": f"{params.get('niche', 'Post')} #{ordinal}"},
                    ),
                )
            callbacks.progress(
                GENERATION_STARTED_PROGRESS + (ordinal * GENERATION_SPAN) // task.units_expected,
            )


@dataclass(slots=True)
class EchoScanHandler:
    """Completes a scan with a score derived from the URL; ``fail`` marks the unit FAILED."""

    fail: bool = False

    def run(self, task: TaskView, callbacks: WorkerCallbacks) -> None:
        url = str(task.params.get("url", ""))
        callbacks.progress(10, status=TaskStatus.SCANNING)
        if self.fail:
            callbacks.unit_result(
                UnitResult(
                    unit_id="scan",
                    outcome=UnitStatus.FAILED,
                    error_message=f"Could not fetch {url}",
                ),
            )
            return
        score = int(hashlib.sha256(url.encode("utf-8")).hexdigest()[:2], 16) * 100 // 255
        callbacks.unit_result(
            UnitResult(
                unit_id="scan",
                outcome=UnitStatus.COMPLETED,
                size=1,
                generation_time_ms=50,
                result={"url": url, "seo_score": score},
            ),
        )


def _unit_ids(allocations: object, total_units: int) -> list[tuple[str, str | None]]:
    if not isinstance(allocations, dict) or not allocations:
        return [(f"unit-{index}", None) for index in range(1, total_units + 1)]
    unit_ids: list[tuple[str, str | None]] = []
    for category in CONTENT_CATEGORIES:
        for index in range(1, int(allocations.get(category, 0)) + 1):
            unit_ids.append((f"{category}-{index}", category))
    return unit_ids


def _keywords(niche: str, count: int) -> list[str]:
    base = niche.lower().split() or ["topic"]
    return [f"{base[index % len(base)]} {index + 1}" for index in range(count)]
