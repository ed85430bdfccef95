"""Fan out to the candidate generators, then merge, dedupe and rank."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Iterable

from .config import CANDIDATE_EXPANSION, GENERATOR_TIMEOUT
from .generators import (
    HYBRID_LABEL,
    Candidate,
    CandidateGenerator,
    GeneratorError,
    GeneratorResult,
    RequestContext,
    Strategy,
)
from .weights import WeightVector

logger = logging.getLogger(__name__)

# Merge order; ties in score keep this encounter order
STRATEGY_ORDER = (
    Strategy.CONTENT_BASED,
    Strategy.COLLABORATIVE,
    Strategy.POPULARITY,
    Strategy.RECENCY,
)


@dataclass
class RankedResult:
    candidates: list[Candidate]
    results: dict[Strategy, GeneratorResult] = field(default_factory=dict)
    requested: dict[Strategy, int] = field(default_factory=dict)

    @property
    def failed(self) -> list[Strategy]:
        return [s for s, r in self.results.items() if not r.ok]

    def strategy_report(self) -> dict[str, dict]:
        report = {}
        for strategy in STRATEGY_ORDER:
            if strategy in self.results:
                report[strategy.value] = {"requested": self.requested.get(strategy, 0),
                                          **self.results[strategy].describe()}
            else:
                report[strategy.value] = {"requested": 0, "status": "skipped", "count": 0}
        return report


def merge_candidates(
    results: Iterable[GeneratorResult],
    limit: int,
    exclude: set[str] | None = None,
) -> list[Candidate]:
    """
    Merge generator output into one ranked list.

    Duplicates (same content type and id) keep the highest-scoring entry and
    its reasons; an item proposed by more than one strategy is labelled
    hybrid. Equal scores keep first-encounter order.
    """
    exclude = exclude or set()
    best: dict[str, Candidate] = {}
    sources: dict[str, list[str]] = {}

    for result in results:
        for candidate in result.candidates:
            key = candidate.key
            if key in exclude:
                continue
            contributors = sources.setdefault(key, [])
            if candidate.strategy.value not in contributors:
                contributors.append(candidate.strategy.value)
            current = best.get(key)
            if current is None or candidate.score > current.score:
                best[key] = candidate

    merged = []
    for key, candidate in best.items():
        contributors = sources[key]
        merged.append(replace(
            candidate,
            algorithm=HYBRID_LABEL if len(contributors) > 1 else candidate.algorithm,
            aux={**candidate.aux, "strategies": list(contributors)},
        ))

    merged.sort(key=lambda c: -c.score)
    return merged[:limit]


class Aggregator:
    """
    Runs the generators concurrently under a per-call timeout.

    Each strategy with positive weight is asked for ``ceil(limit * expansion *
    weight)`` candidates, leaving headroom for duplicates. Generators run on a
    private thread pool: a call that times out keeps its worker until it
    returns, but nothing waits for it.
    """

    def __init__(
        self,
        generators: dict[Strategy, CandidateGenerator],
        timeout: float = GENERATOR_TIMEOUT,
        expansion: int = CANDIDATE_EXPANSION,
    ):
        self.generators = generators
        self.timeout = timeout
        self.expansion = expansion
        self._executor = ThreadPoolExecutor(
            max_workers=max(4, 2 * len(generators)), thread_name_prefix="generator"
        )

    def allocate(self, weights: WeightVector, limit: int) -> dict[Strategy, int]:
        expanded = limit * self.expansion
        allocation = {}
        for strategy in STRATEGY_ORDER:
            weight = getattr(weights, strategy.value)
            if weight > 0 and strategy in self.generators:
                # round off float noise so 10 * 0.3 asks for 3, not 4
                allocation[strategy] = math.ceil(round(expanded * weight, 6))
        return allocation

    async def _run_one(self, strategy: Strategy, context: RequestContext, count: int) -> GeneratorResult:
        generator = self.generators[strategy]
        start = time.perf_counter()
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, generator.generate, context, count),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{strategy.value} generator timed out after {self.timeout}s")
            error = GeneratorError(strategy, "timeout", f"timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"{strategy.value} generator raised outside its contract: {e}")
            error = GeneratorError(strategy, "failure", str(e))
        return GeneratorResult(strategy, [], error, (time.perf_counter() - start) * 1000)

    async def rank_async(self, context: RequestContext, weights: WeightVector, limit: int) -> RankedResult:
        """
        Collect, merge and rank candidates for one request.

        Cancelling the calling task cancels every pending generator call and
        re-raises CancelledError.
        """
        allocation = self.allocate(weights, limit)
        tasks = {
            strategy: asyncio.create_task(self._run_one(strategy, context, count))
            for strategy, count in allocation.items()
        }
        try:
            gathered = await asyncio.gather(*tasks.values())
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            logger.info("Ranking cancelled; dropped pending generator calls")
            raise

        results = dict(zip(tasks.keys(), gathered))
        exclude = {context.focal_key} if context.focal_key else set()
        candidates = merge_candidates(
            (results[s] for s in STRATEGY_ORDER if s in results), limit, exclude
        )
        if results and all(not r.ok for r in results.values()):
            logger.error("All candidate generators failed; returning no recommendations")
        return RankedResult(candidates, results, allocation)

    def rank(self, context: RequestContext, weights: WeightVector, limit: int) -> RankedResult:
        return asyncio.run(self.rank_async(context, weights, limit))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
