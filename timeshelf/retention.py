"""Retention manager for timeshelf.

This module provides the tiered retention strategy ("X:Y" tokens: past X
days keep one snapshot every Y days), the pure evaluator that turns a
catalog into a keep/delete plan, and the RetentionManager that applies
that plan to a destination.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple
import logging
import re
import time

from timeshelf.catalog import Snapshot
from timeshelf.config import ConfigurationError


logger = logging.getLogger(__name__)


SECONDS_PER_DAY = 86400

_TOKEN_RE = re.compile(r"^(\d+):(\d+)$")


@dataclass(frozen=True)
class StrategyToken:
    """Past ``threshold_days`` keep one snapshot every ``interval_days``."""
    threshold_days: int
    interval_days: int

    def __str__(self) -> str:
        return f"{self.threshold_days}:{self.interval_days}"


@dataclass(frozen=True)
class RetentionStrategy:
    """
    Ordered retention tokens.

    Tokens are held in evaluation order: largest threshold first, and for
    equal thresholds the smaller interval first, so the least aggressive
    thinning wins a tie.
    """
    tokens: Tuple[StrategyToken, ...]

    def match(self, age_seconds: int) -> Optional[StrategyToken]:
        """Return the token governing a snapshot of the given age, if any."""
        for token in self.tokens:
            if age_seconds >= token.threshold_days * SECONDS_PER_DAY:
                return token
        return None

    def __str__(self) -> str:
        return " ".join(str(t) for t in self.tokens)


def parse_strategy(text: str) -> RetentionStrategy:
    """
    Parse a strategy string such as ``"1:1 30:7 365:30"``.

    Raises:
        ConfigurationError: If the string is empty or a token is not
            two non-negative integers separated by a colon
    """
    parts = text.split()
    if not parts:
        raise ConfigurationError("Retention strategy is empty")

    tokens = []
    for part in parts:
        match = _TOKEN_RE.match(part)
        if match is None:
            raise ConfigurationError(
                f"Invalid retention token '{part}': expected THRESHOLD:INTERVAL in days"
            )
        tokens.append(StrategyToken(int(match.group(1)), int(match.group(2))))

    tokens.sort(key=lambda t: (-t.threshold_days, t.interval_days))
    return RetentionStrategy(tokens=tuple(tokens))


@dataclass
class RetentionPlan:
    """Outcome of evaluating a strategy. Nothing has been deleted yet."""
    to_keep: List[Snapshot] = field(default_factory=list)
    to_delete: List[Snapshot] = field(default_factory=list)

    def delete_ids(self) -> Set[str]:
        return {s.id for s in self.to_delete}

    def keep_ids(self) -> Set[str]:
        return {s.id for s in self.to_keep}


def evaluate_retention(
    snapshots: Iterable[Snapshot],
    strategy: RetentionStrategy,
    link_base_id: Optional[str],
    now: int,
) -> RetentionPlan:
    """
    Decide which snapshots the strategy expires.

    The walk goes oldest to newest. The oldest snapshot is always kept and
    seeds the "last kept" timestamp. The walk stops at the link base: the
    link base and everything newer is never inspected. Each other snapshot
    is governed by the token with the largest threshold its age reaches.
    With no such token it is kept; with an interval of 0 it is deleted;
    otherwise it is deleted when fewer than ``interval`` calendar days
    (epoch-day arithmetic) separate it from the last kept snapshot.

    Snapshots without a parsed timestamp are ignored entirely.

    Args:
        snapshots: Catalog snapshots, any order
        strategy: Parsed retention strategy
        link_base_id: Id of the snapshot the current run links against
        now: Current time in epoch seconds

    Returns:
        RetentionPlan; evaluation has no side effects
    """
    ordered = sorted((s for s in snapshots if s.timestamp is not None), key=lambda s: s.id)
    plan = RetentionPlan()
    if not ordered:
        return plan

    oldest = ordered[0]
    last_kept = oldest.timestamp
    deleted: Set[str] = set()

    for snapshot in ordered:
        if link_base_id is not None and snapshot.id >= link_base_id:
            break
        if snapshot.id == oldest.id:
            continue

        token = strategy.match(now - snapshot.timestamp)
        if token is None:
            last_kept = snapshot.timestamp
            continue

        if token.interval_days == 0:
            deleted.add(snapshot.id)
            continue

        days_since_kept = snapshot.timestamp // SECONDS_PER_DAY - last_kept // SECONDS_PER_DAY
        if days_since_kept < token.interval_days:
            deleted.add(snapshot.id)
        else:
            last_kept = snapshot.timestamp

    for snapshot in ordered:
        if snapshot.id in deleted:
            plan.to_delete.append(snapshot)
        else:
            plan.to_keep.append(snapshot)
    return plan


@dataclass
class RetentionResult:
    """Result of applying retention policy."""
    kept_snapshots: List[str]
    deleted_snapshots: List[str]
    dry_run: bool = False


class RetentionManager:
    """
    Applies a retention strategy to a destination.

    Every deletion goes through ``Destination.expire`` which re-checks the
    backup marker first.
    """

    def __init__(self, destination, strategy: RetentionStrategy):
        """
        Args:
            destination: timeshelf.destination.Destination to prune
            strategy: Parsed retention strategy
        """
        self.destination = destination
        self.strategy = strategy

    def plan(self, link_base_id: Optional[str], now: Optional[int] = None) -> RetentionPlan:
        """Evaluate the strategy against the current catalog."""
        if now is None:
            now = int(time.time())
        listing = self.destination.catalog.list()
        return evaluate_retention(listing.snapshots, self.strategy, link_base_id, now)

    def apply_retention(
        self,
        link_base_id: Optional[str],
        now: Optional[int] = None,
        dry_run: bool = False,
    ) -> RetentionResult:
        """
        Expire every snapshot the strategy no longer wants.

        Args:
            link_base_id: Snapshot that must survive along with everything newer
            now: Current epoch seconds (default: time.time())
            dry_run: Only report what would be deleted

        Raises:
            SafetyCheckError: If the destination marker vanished
        """
        plan = self.plan(link_base_id, now)

        deleted = []
        for snapshot in plan.to_delete:
            if dry_run:
                logger.info(f"Would expire {snapshot.path}")
            else:
                self.destination.expire(snapshot)
            deleted.append(snapshot.id)

        if not deleted:
            logger.debug("Retention policy applied: no snapshots deleted")

        return RetentionResult(
            kept_snapshots=[s.id for s in plan.to_keep],
            deleted_snapshots=deleted,
            dry_run=dry_run,
        )
