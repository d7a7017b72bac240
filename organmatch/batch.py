"""
Batch Matching Engine.

Responsibilities:
- Score every active donor against every waiting recipient.
- Rank accepted pairs and persist the ones that have no match yet.
- Rebuild the aggregate statistic shown on the dashboard.

Non-Responsibilities:
- No scoring rules (reuses scoring.score_pair).
- No scheduling; callers decide when to run.

Invariant:
Only one batch runs at a time in a process. Cost grows with
donors x recipients, so callers should rate-limit invocation.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .database import MATCH_COMPLETED, MATCH_PENDING, Donor, Match, Recipient
from .logger import get_logger
from .orchestrator import DEFAULT_ACCEPTANCE_THRESHOLD, create_if_absent, score_candidate
from .scoring import DEFAULT_FULLY_WAITED_DAYS, ScoreBreakdown
from .storage import SqlRegistry

logger = get_logger()

DEFAULT_HIGH_CONFIDENCE_SCORE = 85

_batch_slot = threading.Lock()


@dataclass(frozen=True)
class Candidate:
    donor: Donor
    recipient: Recipient
    breakdown: ScoreBreakdown

    @property
    def score(self) -> int:
        return self.breakdown.score


@dataclass(frozen=True)
class AggregateStatistic:
    """Rebuildable snapshot for display. Has no identity of its own."""

    total_donors: int = 0
    total_recipients: int = 0
    pending_matches: int = 0
    completed_matches: int = 0
    average_score: float = 0.0
    ai_match_rate: float = 0.0
    organ_type_distribution: Dict[str, int] = field(default_factory=dict)
    regional_distribution: Dict[str, int] = field(default_factory=dict)
    last_updated: Optional[datetime] = None


@dataclass
class BatchResult:
    matches_found: int
    matches: List[Match]
    candidates: int = 0
    ai_match_rate: Optional[float] = None


class StatisticsBoard:
    """Holds the latest AggregateStatistic; publishing replaces it whole."""

    def __init__(self):
        self._lock = threading.Lock()
        self._latest: Optional[AggregateStatistic] = None

    def publish(self, statistic: AggregateStatistic) -> None:
        with self._lock:
            self._latest = statistic

    def latest(self) -> Optional[AggregateStatistic]:
        with self._lock:
            return self._latest


def ai_match_rate(scores: List[int], high_confidence_score: int = DEFAULT_HIGH_CONFIDENCE_SCORE) -> float:
    """Percentage of scores at or above the high-confidence cut, one decimal."""
    if not scores:
        return 0.0
    high = sum(1 for s in scores if s >= high_confidence_score)
    return round(high / len(scores) * 100, 1)


def compute_statistics(registry: SqlRegistry, ai_rate: float, now: Optional[datetime] = None) -> AggregateStatistic:
    return AggregateStatistic(
        total_donors=registry.count_donors(),
        total_recipients=registry.count_recipients(),
        pending_matches=registry.count_matches(MATCH_PENDING),
        completed_matches=registry.count_matches(MATCH_COMPLETED),
        average_score=registry.average_score(),
        ai_match_rate=ai_rate,
        organ_type_distribution=registry.organ_distribution(),
        regional_distribution=registry.regional_distribution(),
        last_updated=now or datetime.now(),
    )


def get_statistics(registry: SqlRegistry, board: StatisticsBoard) -> AggregateStatistic:
    """
    Status query: the last snapshot published in this process, or a fresh
    one built from storage with the last stored AI match rate.
    """
    latest = board.latest()
    if latest is not None:
        return latest
    statistic = compute_statistics(registry, registry.latest_ai_match_rate() or 0.0)
    board.publish(statistic)
    return statistic


def rank_candidates(candidates: List[Candidate]) -> List[Candidate]:
    """Best score first, then most urgent recipient, then longest waiting."""
    return sorted(
        candidates,
        key=lambda c: (
            -c.score,
            -c.recipient.urgency_level,
            c.recipient.created_at,
            c.donor.id,
            c.recipient.id,
        ),
    )


class BatchMatchingEngine:
    """Full cross-product matching pass over the active population."""

    def __init__(
        self,
        registry: SqlRegistry,
        board: Optional[StatisticsBoard] = None,
        sink=None,
        acceptance_threshold: int = DEFAULT_ACCEPTANCE_THRESHOLD,
        high_confidence_score: int = DEFAULT_HIGH_CONFIDENCE_SCORE,
        fully_waited_days: int = DEFAULT_FULLY_WAITED_DAYS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.registry = registry
        self.board = board or StatisticsBoard()
        self.sink = sink
        self.acceptance_threshold = acceptance_threshold
        self.high_confidence_score = high_confidence_score
        self.fully_waited_days = fully_waited_days
        self.clock = clock

    def score_population(self, now: datetime) -> List[Candidate]:
        donors = self.registry.find_all_active_donors()
        recipients = self.registry.find_all_waiting_recipients()
        logger.info("Scoring population", donors=len(donors), recipients=len(recipients))

        accepted: List[Candidate] = []
        for donor in donors:
            for recipient in recipients:
                breakdown = score_candidate(donor, recipient, now, self.fully_waited_days)
                if breakdown is None:
                    continue
                if breakdown.score == 0:
                    logger.record_match_skipped("incompatible")
                elif breakdown.score < self.acceptance_threshold:
                    logger.record_match_skipped("below_threshold")
                else:
                    accepted.append(Candidate(donor, recipient, breakdown))
        return rank_candidates(accepted)

    def _previous_rate(self) -> float:
        stored = self.registry.latest_ai_match_rate()
        if stored is not None:
            return stored
        previous = self.board.latest()
        return previous.ai_match_rate if previous else 0.0

    def run_batch(self) -> BatchResult:
        """
        Run one batch pass. Concurrent calls wait for the running batch to finish.

        Returns:
            BatchResult with the matches created, in ranking order
        """
        with _batch_slot:
            now = self.clock()
            ranked = self.score_population(now)

            created: List[Match] = []
            for candidate in ranked:
                match = create_if_absent(
                    self.registry, candidate.donor, candidate.recipient, candidate.breakdown, self.sink
                )
                if match is not None:
                    created.append(match)

            rate: Optional[float] = None
            if created:
                rate = ai_match_rate([m.compatibility_score for m in created], self.high_confidence_score)
                self.registry.save_ai_match_rate(rate, now)
            kept_rate = rate if rate is not None else self._previous_rate()
            self.board.publish(compute_statistics(self.registry, kept_rate, now))

            logger.info(
                "Batch complete",
                candidates=len(ranked),
                matches_found=len(created),
                ai_match_rate=kept_rate,
            )
            return BatchResult(
                matches_found=len(created),
                matches=created,
                candidates=len(ranked),
                ai_match_rate=rate,
            )
