"""
Weighted queue selection.

Smooth weighted round-robin: every pick adds each queue's weight to its
running score, the highest score wins and pays back the total weight. With
weights 6/3/1 every window of 10 picks contains exactly 6, 3 and 1 picks of
each queue, interleaved rather than bursty, so low-weight queues are never
starved.

Each worker owns its own selector; nothing here is shared between workers.
"""

from collections.abc import Mapping

from taskq.exceptions import ConfigurationError


class WeightedQueueSelector:

    def __init__(self, weights: Mapping[str, int]):
        if not weights:
            raise ConfigurationError("at least one queue is required")
        for name, weight in weights.items():
            if weight < 1:
                raise ConfigurationError(
                    f"queue {name!r} weight must be >= 1, got {weight}"
                )

        self._weights = dict(weights)
        self._total = sum(self._weights.values())
        self._current = {name: 0 for name in self._weights}
        # Fallback order: heaviest first, ties by name for determinism
        self._by_weight = sorted(self._weights, key=lambda n: (-self._weights[n], n))

    @property
    def queues(self) -> list[str]:
        return list(self._by_weight)

    def next_queue(self) -> str:
        """Pick the next queue to pull from."""
        for name, weight in self._weights.items():
            self._current[name] += weight

        chosen = max(self._by_weight, key=lambda n: self._current[n])
        self._current[chosen] -= self._total
        return chosen

    def next_order(self) -> list[str]:
        """
        The queue order for one lease attempt.

        The weighted pick comes first; if it turns out to be empty the store
        falls through to the remaining queues in weight order.
        """
        chosen = self.next_queue()
        return [chosen, *(name for name in self._by_weight if name != chosen)]
