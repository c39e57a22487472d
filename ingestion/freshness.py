"""
Freshness evaluation: decide, per partition, whether a refresh is needed.

Decisions rely only on source metadata (probe) and the stored state; the
evaluator never reads partition data and never writes state.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
import enum
import logging

from core.clock import utcnow
from core.exceptions import ConfigurationError, ProbeError
from ingestion.sources.base import PartitionSource
from models.base import PartitionStatus
from schemas.partition import FreshnessDecision, FreshnessReason, PartitionState

logger = logging.getLogger(__name__)


class ProbeFailurePolicy(str, enum.Enum):
    """What to do with a partition whose source metadata cannot be read"""
    ASSUME_STALE = "assume_stale"
    ASSUME_FRESH = "assume_fresh"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Cross-cycle retry budget for failed partitions.

    Attributes:
        max_attempts: Consecutive failed attempts allowed per source version
        backoff_seconds: Delay after the first failure
        max_backoff_seconds: Upper bound of the exponential delay
    """
    max_attempts: int = 3
    backoff_seconds: float = 60.0
    max_backoff_seconds: float = 3600.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError(
                "max_attempts must be at least 1",
                context={"max_attempts": self.max_attempts}
            )
        if self.backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ConfigurationError("Backoff durations must not be negative")

    def backoff(self, attempt_count: int) -> timedelta:
        """Delay before the next attempt after attempt_count consecutive failures"""
        if attempt_count <= 0:
            return timedelta(0)
        seconds = self.backoff_seconds * (2 ** (attempt_count - 1))
        return timedelta(seconds=min(seconds, self.max_backoff_seconds))

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts


class FreshnessEvaluator:
    """
    Evaluate staleness of a partition.

    Policy, first match wins:
    1. force                                  -> stale (forced)
    2. never loaded                           -> stale (first_load)
    3. failed, source changed since failure   -> stale (source_changed, new budget)
       failed, budget exhausted               -> fresh (retries_exhausted)
       failed, backoff window open            -> fresh (backoff)
       failed                                 -> stale (retry)
    4. fingerprint differs from committed one -> stale (fingerprint_changed)
    5. otherwise                              -> fresh (unchanged)

    When the probe fails the probe failure policy decides: assume_stale
    refreshes with an unknown fingerprint, assume_fresh skips the partition.
    """

    def __init__(
        self,
        source: PartitionSource,
        retry_policy: Optional[RetryPolicy] = None,
        probe_failure_policy: ProbeFailurePolicy = ProbeFailurePolicy.ASSUME_STALE
    ):
        self.source = source
        self.retry_policy = retry_policy or RetryPolicy()
        self.probe_failure_policy = ProbeFailurePolicy(probe_failure_policy)

    async def _probe(self, key: str) -> Optional[str]:
        """Fingerprint of the source, or None if the probe failed"""
        try:
            return await self.source.probe(key)
        except ProbeError as e:
            logger.warning(
                f"Probe failed for partition {key}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            return None

    async def evaluate(
        self,
        key: str,
        state: Optional[PartitionState],
        force: bool = False,
        now: Optional[datetime] = None
    ) -> FreshnessDecision:
        now = now or utcnow()
        fingerprint = await self._probe(key)
        decision = self._decide(key, state, force, fingerprint, now)

        logger.debug(
            f"Partition {key}: {'stale' if decision.stale else 'fresh'} ({decision.reason.value})"
        )
        return decision

    async def is_stale(self, key: str, state: Optional[PartitionState], force: bool = False) -> bool:
        decision = await self.evaluate(key, state, force)
        return decision.stale

    def _decide(
        self,
        key: str,
        state: Optional[PartitionState],
        force: bool,
        fingerprint: Optional[str],
        now: datetime
    ) -> FreshnessDecision:
        def stale(reason: FreshnessReason, resets_budget: bool = False) -> FreshnessDecision:
            return FreshnessDecision(
                key=key, stale=True, reason=reason,
                fingerprint=fingerprint, resets_budget=resets_budget
            )

        def fresh(reason: FreshnessReason) -> FreshnessDecision:
            return FreshnessDecision(key=key, stale=False, reason=reason, fingerprint=fingerprint)

        if force:
            return stale(FreshnessReason.FORCED)

        if state is None:
            return stale(FreshnessReason.FIRST_LOAD)

        if state.status == PartitionStatus.FAILED:
            changed = (
                fingerprint is not None
                and state.failed_fingerprint is not None
                and fingerprint != state.failed_fingerprint
            )
            if changed:
                return stale(FreshnessReason.SOURCE_CHANGED, resets_budget=True)
            if self.retry_policy.exhausted(state.attempt_count):
                return fresh(FreshnessReason.RETRIES_EXHAUSTED)
            if state.last_attempt_at is not None:
                retry_at = state.last_attempt_at + self.retry_policy.backoff(state.attempt_count)
                if now < retry_at:
                    return fresh(FreshnessReason.BACKOFF)
            if fingerprint is None and self.probe_failure_policy == ProbeFailurePolicy.ASSUME_FRESH:
                return fresh(FreshnessReason.PROBE_FAILED)
            return stale(FreshnessReason.RETRY)

        if fingerprint is None:
            if self.probe_failure_policy == ProbeFailurePolicy.ASSUME_FRESH:
                return fresh(FreshnessReason.PROBE_FAILED)
            return stale(FreshnessReason.PROBE_FAILED)

        if fingerprint != state.source_fingerprint:
            return stale(FreshnessReason.FINGERPRINT_CHANGED)

        return fresh(FreshnessReason.UNCHANGED)
