"""
Candidate generation for discovering registry identifiers not yet stored locally.

Strategies only produce candidates; the orchestrator performs the lookups,
pacing and persistence. `AttemptPlan` applies the shared rules: skip identifiers
already known when the run started, never look up the same candidate twice, and
stop after `ATTEMPT_MULTIPLIER * limit` drawn candidates.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from collections.abc import Iterator

SEQUENTIAL_SEED = 3_000_000
SEQUENTIAL_OFFSET = 1_000
RANDOM_RANGES: tuple[tuple[int, int], ...] = ((1_000_000, 4_000_000), (2_500_000, 3_500_000))
ATTEMPT_MULTIPLIER = 10


class DiscoveryStrategy(ABC):
    """Produces an (unbounded) stream of candidate identifiers."""

    kind: str = ""

    @abstractmethod
    def candidates(self) -> Iterator[str]:
        raise NotImplementedError

    def describe(self) -> dict:
        return {"strategy": self.kind}


# Global in-process registry: kind -> strategy class
_REGISTRY: dict[str, type[DiscoveryStrategy]] = {}


def register(cls: type[DiscoveryStrategy]) -> type[DiscoveryStrategy]:
    """
    Class decorator to register a strategy class.
    Requires cls.kind to be a non-empty string.
    """
    kind = getattr(cls, "kind", "") or ""
    if not isinstance(kind, str) or not kind.strip():
        raise ValueError(f"Cannot register strategy {cls!r}: missing/empty 'kind'.")
    key = kind.strip().lower()
    if key in _REGISTRY and _REGISTRY[key] is not cls:
        raise ValueError(f"Strategy kind {key!r} already registered to {_REGISTRY[key]!r}.")
    _REGISTRY[key] = cls
    return cls


def get(kind: str) -> type[DiscoveryStrategy]:
    key = (kind or "").strip().lower()
    if key not in _REGISTRY:
        raise KeyError(f"No discovery strategy registered for kind {kind!r}.")
    return _REGISTRY[key]


def all_kinds() -> list[str]:
    return sorted(_REGISTRY)


def next_sequential_start(max_known: int | None) -> int:
    return SEQUENTIAL_SEED if max_known is None else max_known + SEQUENTIAL_OFFSET


@register
class SequentialStrategy(DiscoveryStrategy):
    kind = "sequential"

    def __init__(self, start: int) -> None:
        if start < 0:
            raise ValueError("sequential start must be >= 0")
        self.start = int(start)

    def candidates(self) -> Iterator[str]:
        n = self.start
        while True:
            yield str(n)
            n += 1

    def describe(self) -> dict:
        return {"strategy": self.kind, "start_identifier": str(self.start)}


@register
class RandomStrategy(DiscoveryStrategy):
    kind = "random"

    def __init__(
        self,
        rng: random.Random | None = None,
        ranges: tuple[tuple[int, int], ...] = RANDOM_RANGES,
    ) -> None:
        if not ranges or any(lo > hi for lo, hi in ranges):
            raise ValueError("random ranges must be non-empty (low, high) pairs")
        self.rng = rng or random.Random()
        self.ranges = tuple(ranges)

    def candidates(self) -> Iterator[str]:
        while True:
            lo, hi = self.rng.choice(self.ranges)
            yield str(self.rng.randint(lo, hi))

    def describe(self) -> dict:
        return {"strategy": self.kind, "ranges": [list(r) for r in self.ranges]}


def build(
    kind: str,
    *,
    max_known: int | None = None,
    start_identifier: int | None = None,
    rng: random.Random | None = None,
) -> DiscoveryStrategy:
    cls = get(kind)
    if cls is SequentialStrategy:
        start = start_identifier if start_identifier is not None else next_sequential_start(max_known)
        return SequentialStrategy(start)
    if cls is RandomStrategy:
        return RandomStrategy(rng=rng)
    return cls()  # type: ignore[call-arg]


class AttemptPlan:
    """
    Iterate unknown candidates from a strategy under the attempt cap.

    `attempts` counts every drawn candidate, including skipped known ones, so
    a densely populated range still terminates.
    """

    def __init__(self, strategy: DiscoveryStrategy, known: set[str], limit: int) -> None:
        self.strategy = strategy
        self.known = frozenset(known)
        self.max_attempts = max(0, int(limit)) * ATTEMPT_MULTIPLIER
        self.attempts = 0
        self.skipped = 0

    def __iter__(self) -> Iterator[str]:
        seen: set[str] = set()
        for candidate in self.strategy.candidates():
            if self.attempts >= self.max_attempts:
                return
            self.attempts += 1
            if candidate in self.known or candidate in seen:
                self.skipped += 1
                continue
            seen.add(candidate)
            yield candidate
