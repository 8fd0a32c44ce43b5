# -*- coding: utf-8 -*-
"""Test doubles for the job engine collaborators."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple, Union

from nutrilog.diet.models import FoodItem, NutritionRecord

CAPTURED_AT = datetime(2024, 5, 4, 12, 30, tzinfo=timezone.utc)


def make_record(calories: int = 520, description: str = "Chicken rice bowl") -> NutritionRecord:
    return NutritionRecord(
        calories=calories,
        protein_g=32.0,
        carbs_g=60.0,
        fat_g=14.0,
        description=description,
        items=[FoodItem(name="chicken", calories_kcal=300), FoodItem(name="rice", calories_kcal=220)],
    )


class FakeClock:
    """Virtual time: `sleep()` records the delay and advances `now` instantly."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


Step = Union[NutritionRecord, BaseException, Callable[[], NutritionRecord]]


class ScriptedAnalysis:
    """Plays back one scripted step per call; the last step repeats."""

    def __init__(self, steps: Sequence[Step], *, clock: Optional[FakeClock] = None) -> None:
        if not steps:
            raise ValueError("at least one step is required")
        self.steps = list(steps)
        self.clock = clock
        self.calls: List[str] = []
        self.call_times: List[float] = []
        self.gate: Optional[asyncio.Event] = None
        self.running = 0
        self.max_running = 0

    async def analyze(self, artifact_ref: str) -> NutritionRecord:
        self.calls.append(artifact_ref)
        if self.clock is not None:
            self.call_times.append(self.clock.now)
        step = self.steps[min(len(self.calls), len(self.steps)) - 1]
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if isinstance(step, BaseException):
                raise step
            if callable(step):
                return step()
            return step
        finally:
            self.running -= 1


class SlowAnalysis:
    """Never answers within a short attempt timeout."""

    def __init__(self, seconds: float = 5.0) -> None:
        self.seconds = seconds
        self.calls: List[str] = []

    async def analyze(self, artifact_ref: str) -> NutritionRecord:
        self.calls.append(artifact_ref)
        await asyncio.sleep(self.seconds)
        return make_record()


class FakeStorage:
    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.error = error
        self.saved: List[Tuple[NutritionRecord, datetime]] = []

    async def save(self, record: NutritionRecord, timestamp: datetime) -> str:
        if self.error is not None:
            raise self.error
        self.saved.append((record, timestamp))
        return f"entry-{len(self.saved)}"


class FakeFiles:
    def __init__(self, refs: Iterable[str] = ()) -> None:
        self.refs: Set[str] = set(refs)
        self.delete_calls: List[str] = []

    def exists(self, artifact_ref: str) -> bool:
        return artifact_ref in self.refs

    def delete(self, artifact_ref: str) -> bool:
        self.delete_calls.append(artifact_ref)
        if artifact_ref not in self.refs:
            return False
        self.refs.discard(artifact_ref)
        return True
