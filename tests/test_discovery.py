# tests/test_discovery.py
import itertools
import random

import pytest

from modules.carrier_sync.lib import discovery


def test_registry_lists_builtin_kinds():
    assert discovery.all_kinds() == ["random", "sequential"]
    assert discovery.get("Sequential") is discovery.SequentialStrategy
    with pytest.raises(KeyError):
        discovery.get("alphabetical")


def test_register_rejects_missing_kind_and_duplicates():
    class Nameless(discovery.DiscoveryStrategy):
        def candidates(self):
            yield from ()

    with pytest.raises(ValueError):
        discovery.register(Nameless)

    class Impostor(discovery.DiscoveryStrategy):
        kind = "sequential"

        def candidates(self):
            yield from ()

    with pytest.raises(ValueError):
        discovery.register(Impostor)


def test_sequential_start_follows_highest_known():
    assert discovery.build("sequential", max_known=None).start == 3_000_000
    assert discovery.build("sequential", max_known=1_174_814).start == 1_175_814
    assert discovery.build("sequential", max_known=5, start_identifier=2_000_000).start == 2_000_000


def test_sequential_candidates_are_consecutive():
    strat = discovery.SequentialStrategy(1_000_000)
    assert list(itertools.islice(strat.candidates(), 3)) == ["1000000", "1000001", "1000002"]
    assert strat.describe() == {"strategy": "sequential", "start_identifier": "1000000"}


def test_random_candidates_stay_in_configured_ranges():
    strat = discovery.build("random", rng=random.Random(42))
    for c in itertools.islice(strat.candidates(), 200):
        n = int(c)
        assert any(lo <= n <= hi for lo, hi in discovery.RANDOM_RANGES)


def test_random_is_reproducible_with_seeded_rng():
    a = discovery.RandomStrategy(rng=random.Random(7))
    b = discovery.RandomStrategy(rng=random.Random(7))
    assert list(itertools.islice(a.candidates(), 5)) == list(itertools.islice(b.candidates(), 5))


def test_random_rejects_inverted_range():
    with pytest.raises(ValueError):
        discovery.RandomStrategy(ranges=((10, 1),))


def test_attempt_plan_skips_known_and_counts_them_as_attempts():
    strat = discovery.SequentialStrategy(1_000_000)
    plan = discovery.AttemptPlan(strat, known={"1000000", "1000002"}, limit=1)

    out = list(plan)

    # 10 draws allowed for limit=1; two of them were known
    assert plan.max_attempts == 10
    assert plan.attempts == 10
    assert plan.skipped == 2
    assert "1000000" not in out and "1000002" not in out
    assert out[:2] == ["1000001", "1000003"]
    assert len(out) == 8


def test_attempt_plan_never_repeats_a_candidate():
    class Stuck(discovery.DiscoveryStrategy):
        kind = "stuck-test"

        def candidates(self):
            while True:
                yield "1234567"

    plan = discovery.AttemptPlan(Stuck(), known=set(), limit=2)
    assert list(plan) == ["1234567"]
    assert plan.attempts == 20


def test_attempt_plan_zero_limit_draws_nothing():
    plan = discovery.AttemptPlan(discovery.SequentialStrategy(1), known=set(), limit=0)
    assert list(plan) == []
    assert plan.attempts == 0
