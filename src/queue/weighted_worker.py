"""RQ worker that serves priority lanes by weighted random order."""

from __future__ import annotations

import random
from collections.abc import Mapping, Sequence
from typing import Any

from rq import Queue, Worker

from src.queue.config import LANE_WEIGHTS


def lane_of(queue: Queue) -> str:
    return queue.name.rsplit(":", 1)[-1]


def weighted_order(
    queues: Sequence[Queue],
    weights: Mapping[str, int],
    rng: random.Random | None = None,
) -> list[Queue]:
    """Order queues by weighted sampling without replacement.

    Heavier lanes tend to come first, but every lane with a positive weight
    can lead, so lower lanes are never starved.
    """
    rng = rng or random
    remaining = list(queues)
    ordered: list[Queue] = []
    while remaining:
        lane_weights = [max(weights.get(lane_of(q), 1), 1) for q in remaining]
        choice = rng.choices(range(len(remaining)), weights=lane_weights, k=1)[0]
        ordered.append(remaining.pop(choice))
    return ordered


class WeightedWorker(Worker):
    """Worker whose queue order is resampled after every dequeue."""

    lane_weights: Mapping[str, int] = LANE_WEIGHTS

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._rng = random.Random()
        self._ordered_queues = weighted_order(self.queues, self.lane_weights, self._rng)

    def reorder_queues(self, reference_queue: Queue) -> None:
        self._ordered_queues = weighted_order(self.queues, self.lane_weights, self._rng)
