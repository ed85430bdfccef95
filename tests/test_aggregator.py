import asyncio
import threading

import pytest

from session_rec.aggregator import Aggregator, merge_candidates
from session_rec.generators import (
    Candidate,
    CandidateGenerator,
    ContentBasedGenerator,
    GeneratorResult,
    PopularityGenerator,
    Reason,
    RequestContext,
    Strategy,
)
from session_rec.weights import WeightVector


class StaticGenerator(CandidateGenerator):
    def __init__(self, strategy, candidates):
        self.strategy = strategy
        self.candidates = candidates
        self.calls = []

    def _generate(self, context, limit):
        self.calls.append(limit)
        return list(self.candidates)


class FailingGenerator(CandidateGenerator):
    def __init__(self, strategy):
        self.strategy = strategy

    def _generate(self, context, limit):
        raise RuntimeError(f"{self.strategy.value} backend down")


class BlockingGenerator(CandidateGenerator):
    def __init__(self, strategy, release: threading.Event):
        self.strategy = strategy
        self.release = release

    def _generate(self, context, limit):
        self.release.wait(timeout=2)
        return []


def _candidate(content_id, score, strategy, content_type="movie"):
    return Candidate(content_type, content_id, score, strategy, [Reason(strategy.value, "why", score)])


def _result(strategy, *candidates):
    return GeneratorResult(strategy, list(candidates))


# -- merge --------------------------------------------------------------------

def test_merge_keeps_highest_score_and_labels_hybrid():
    content = _result(Strategy.CONTENT_BASED, _candidate("ponyo", 0.6, Strategy.CONTENT_BASED))
    popular = _result(
        Strategy.POPULARITY,
        _candidate("ponyo", 0.8, Strategy.POPULARITY),
        _candidate("totoro", 0.75, Strategy.POPULARITY, content_type="character"),
    )

    merged = merge_candidates([content, popular], limit=10)

    assert [c.key for c in merged] == ["movie:ponyo", "character:totoro"]
    ponyo = merged[0]
    assert ponyo.score == pytest.approx(0.8)
    assert ponyo.algorithm == "hybrid"
    assert ponyo.reasons[0].type == "popularity"
    assert ponyo.aux["strategies"] == ["content_based", "popularity"]
    assert merged[1].algorithm == "popular"


def test_merge_is_idempotent():
    results = [
        _result(Strategy.CONTENT_BASED, _candidate("a", 0.5, Strategy.CONTENT_BASED)),
        _result(Strategy.POPULARITY, _candidate("a", 0.5, Strategy.POPULARITY), _candidate("b", 0.7, Strategy.POPULARITY)),
    ]
    once = merge_candidates(results, limit=10)
    twice = merge_candidates([GeneratorResult(Strategy.POPULARITY, once)], limit=10)

    assert [c.key for c in twice] == [c.key for c in once]
    assert [c.score for c in twice] == [c.score for c in once]


def test_merge_ties_keep_encounter_order_and_truncate():
    results = [
        _result(Strategy.CONTENT_BASED, _candidate("b", 0.5, Strategy.CONTENT_BASED)),
        _result(Strategy.RECENCY, _candidate("a", 0.5, Strategy.RECENCY), _candidate("c", 0.5, Strategy.RECENCY)),
    ]
    merged = merge_candidates(results, limit=2)
    assert [c.content_id for c in merged] == ["b", "a"]


def test_merge_excludes_focal_item():
    results = [_result(Strategy.POPULARITY, _candidate("x", 0.9, Strategy.POPULARITY),
                       _candidate("y", 0.8, Strategy.POPULARITY))]
    merged = merge_candidates(results, limit=5, exclude={"movie:x"})
    assert [c.content_id for c in merged] == ["y"]


# -- allocation ---------------------------------------------------------------

def test_allocation_rounds_up_and_skips_zero_weights():
    generators = {s: StaticGenerator(s, []) for s in Strategy}
    aggregator = Aggregator(generators)

    allocation = aggregator.allocate(WeightVector(), limit=5)
    assert allocation == {
        Strategy.CONTENT_BASED: 4,
        Strategy.COLLABORATIVE: 3,
        Strategy.POPULARITY: 2,
        Strategy.RECENCY: 1,
    }

    skewed = WeightVector(content_based=0.0, collaborative=0.0, popularity=0.75, recency=0.25)
    assert aggregator.allocate(skewed, limit=3) == {Strategy.POPULARITY: 5, Strategy.RECENCY: 2}


# -- ranking ------------------------------------------------------------------

def test_ranking_survives_failing_generators(catalog):
    generators = {
        Strategy.CONTENT_BASED: FailingGenerator(Strategy.CONTENT_BASED),
        Strategy.COLLABORATIVE: FailingGenerator(Strategy.COLLABORATIVE),
        Strategy.RECENCY: FailingGenerator(Strategy.RECENCY),
        Strategy.POPULARITY: PopularityGenerator(catalog),
    }
    weights = WeightVector(content_based=0.125, collaborative=0.125, popularity=0.625, recency=0.125)
    ranked = Aggregator(generators).rank(RequestContext(), weights, limit=3)

    # popularity alone is asked for ceil(3 * 2 * 0.625) = 4, more than the limit
    assert ranked.requested[Strategy.POPULARITY] == 4
    assert len(ranked.results[Strategy.POPULARITY].candidates) == 4
    assert len(ranked.candidates) == 3
    assert all(c.strategy is Strategy.POPULARITY for c in ranked.candidates)
    assert set(ranked.failed) == {Strategy.CONTENT_BASED, Strategy.COLLABORATIVE, Strategy.RECENCY}

    report = ranked.strategy_report()
    assert report["popularity"]["status"] == "ok"
    assert report["content_based"]["status"] == "failure"
    assert "backend down" in report["recency"]["error"]


def test_ranking_with_every_generator_failing_is_empty():
    generators = {s: FailingGenerator(s) for s in Strategy}
    ranked = Aggregator(generators).rank(RequestContext(), WeightVector(), limit=5)

    assert ranked.candidates == []
    assert len(ranked.failed) == 4


def test_slow_generator_times_out_without_blocking_others():
    release = threading.Event()
    generators = {
        Strategy.CONTENT_BASED: BlockingGenerator(Strategy.CONTENT_BASED, release),
        Strategy.POPULARITY: StaticGenerator(Strategy.POPULARITY, [_candidate("a", 0.8, Strategy.POPULARITY)]),
    }
    try:
        ranked = Aggregator(generators, timeout=0.1).rank(RequestContext(), WeightVector(), limit=1)
    finally:
        release.set()

    assert [c.content_id for c in ranked.candidates] == ["a"]
    assert ranked.results[Strategy.CONTENT_BASED].status == "timeout"
    assert ranked.strategy_report()["recency"]["status"] == "skipped"


def test_ranking_excludes_focal_item_and_passes_allocation():
    popular = StaticGenerator(Strategy.POPULARITY, [
        _candidate("spirited-away", 0.8, Strategy.POPULARITY),
        _candidate("ponyo", 0.8, Strategy.POPULARITY),
    ])
    aggregator = Aggregator({Strategy.POPULARITY: popular})
    context = RequestContext(context_type="item_detail", context_id="spirited-away")

    ranked = aggregator.rank(context, WeightVector(), limit=5)

    assert [c.content_id for c in ranked.candidates] == ["ponyo"]
    assert popular.calls == [2]
    assert ranked.requested == {Strategy.POPULARITY: 2}


def test_ranking_twice_on_tied_scores_gives_the_same_order():
    content = StaticGenerator(Strategy.CONTENT_BASED, [
        _candidate("b", 0.5, Strategy.CONTENT_BASED),
        _candidate("shared", 0.5, Strategy.CONTENT_BASED),
    ])
    popular = StaticGenerator(Strategy.POPULARITY, [
        _candidate("shared", 0.5, Strategy.POPULARITY),
        _candidate("a", 0.5, Strategy.POPULARITY),
        _candidate("c", 0.5, Strategy.POPULARITY),
    ])
    aggregator = Aggregator({Strategy.CONTENT_BASED: content, Strategy.POPULARITY: popular})

    first = aggregator.rank(RequestContext(), WeightVector(), limit=3)
    second = aggregator.rank(RequestContext(), WeightVector(), limit=3)

    assert len(content.calls) == 2 and len(popular.calls) == 2
    assert [c.key for c in first.candidates] == ["movie:b", "movie:shared", "movie:a"]
    assert [(c.key, c.score, c.algorithm) for c in second.candidates] == [
        (c.key, c.score, c.algorithm) for c in first.candidates
    ]


def test_item_detail_ranking_with_only_content_matches(catalog):
    generators = {
        Strategy.CONTENT_BASED: ContentBasedGenerator(catalog),
        Strategy.COLLABORATIVE: StaticGenerator(Strategy.COLLABORATIVE, []),
        Strategy.RECENCY: StaticGenerator(Strategy.RECENCY, []),
    }
    context = RequestContext(context_type="item_detail", context_id="spirited-away", context_item_type="movie")

    ranked = Aggregator(generators).rank(context, WeightVector(), limit=5)

    assert [c.content_id for c in ranked.candidates][:2] == ["howls-moving-castle", "ponyo"]
    assert "spirited-away" not in [c.content_id for c in ranked.candidates]
    assert all(c.algorithm == "content" for c in ranked.candidates)
    assert ranked.candidates[0].reasons[0].type == "director"


def test_cancelling_the_request_propagates():
    release = threading.Event()
    aggregator = Aggregator({Strategy.POPULARITY: BlockingGenerator(Strategy.POPULARITY, release)}, timeout=5)

    async def scenario():
        task = asyncio.create_task(aggregator.rank_async(RequestContext(), WeightVector(), 3))
        await asyncio.sleep(0.05)
        task.cancel()
        try:
            await task
        finally:
            release.set()

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(scenario())
