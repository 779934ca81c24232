"""
Reconciler state: the per-commit cache and the retry/checkpoint state machine.

Owned by the control loop thread of one scope; nothing here is locked.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from reconciler import errors
from reconciler.objects import GroupVersionKind

logger = logging.getLogger("reconciler.state")

# Consecutive identical failures retried after a fixed one second delay
FAST_RETRY_LIMIT = 5
MAX_BACKOFF_SECONDS = 300.0


def backoff_delay(same_error_count: int) -> float:
    """
    Delay before the next retry after same_error_count identical failures

    1s for the first five, then 2s, 4s, ... doubling up to five minutes.
    """
    if same_error_count <= FAST_RETRY_LIMIT:
        return 1.0
    return min(float(2 ** (same_error_count - FAST_RETRY_LIMIT)), MAX_BACKOFF_SECONDS)


@dataclass
class SourceState:
    """A snapshot of the source repository at one commit"""
    commit: str = ""
    policy_dir: str = ""
    files: List[str] = field(default_factory=list)


@dataclass
class SourceStatus:
    commit: str = ""
    errs: Optional[errors.MultiError] = None
    last_update: float = 0.0

    def equal(self, other: "SourceStatus") -> bool:
        return self.commit == other.commit and errors.same_errors(self.errs, other.errs)


@dataclass
class SyncStatus:
    syncing: bool = False
    commit: str = ""
    errs: Optional[errors.MultiError] = None
    last_update: float = 0.0

    def equal(self, other: "SyncStatus") -> bool:
        return (self.syncing == other.syncing and self.commit == other.commit
                and errors.same_errors(self.errs, other.errs))


@dataclass
class ReconcileCache:
    """Progress made by the reconciler for one source commit"""
    source: SourceState = field(default_factory=SourceState)
    has_parser_result: bool = False
    parser_result: List[dict] = field(default_factory=list)
    has_applier_result: bool = False
    applier_result: Set[GroupVersionKind] = field(default_factory=set)
    need_to_retry: bool = False
    same_error_count: int = 0
    next_retry_time: float = 0.0
    errs: Optional[errors.MultiError] = None

    def set_parser_result(self, objs: List[dict]):
        self.parser_result = objs
        self.has_parser_result = True

    def set_applier_result(self, gvks: Set[GroupVersionKind]):
        self.applier_result = set(gvks)
        self.has_applier_result = True


class ReconcilerState:
    """
    Checkpoint and retry bookkeeping of one scope.

    last_applied holds the policy directory of the most recent cycle in
    which every stage, status persistence included, succeeded. It is cleared
    by any failure so the next cycle revalidates everything.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.last_applied = ""
        self.source_status = SourceStatus()
        self.sync_status = SyncStatus()
        self.cache = ReconcileCache()

    def checkpoint(self):
        applied = self.cache.source.policy_dir
        if applied == self.last_applied:
            return
        logger.info(f"Reconciler checkpoint updated to {applied}")
        self.last_applied = applied
        self.cache.need_to_retry = False
        self.cache.same_error_count = 0
        self.cache.next_retry_time = 0.0
        self.cache.errs = None

    def invalidate(self, errs: Optional[errors.MultiError]):
        """Record a failed cycle and schedule the next retry"""
        logger.error(f"Invalidating reconciler checkpoint: {errs.format_single_line() if errs else ''}")
        if errors.same_errors(self.cache.errs, errs):
            self.cache.same_error_count += 1
        else:
            self.cache.same_error_count = 1
        self.cache.errs = errs
        self.last_applied = ""
        self.cache.need_to_retry = True
        delay = backoff_delay(self.cache.same_error_count)
        self.cache.next_retry_time = self._clock() + delay
        logger.info(f"Retrying in {delay:.0f}s (same error count: {self.cache.same_error_count})")

    def ready_to_retry(self) -> bool:
        return self._clock() >= self.cache.next_retry_time

    def reset_cache(self):
        """Forget everything about the previous commit"""
        self.cache = ReconcileCache()

    def reset_partial_cache(self):
        """Reset the cache but keep the source snapshot and retry bookkeeping"""
        old = self.cache
        self.cache = ReconcileCache(
            source=old.source,
            need_to_retry=old.need_to_retry,
            same_error_count=old.same_error_count,
            next_retry_time=old.next_retry_time,
            errs=old.errs,
        )

    def need_to_set_source_status(self, new_status: SourceStatus) -> bool:
        if not self.source_status.last_update:
            return True
        return not new_status.equal(self.source_status)

    def need_to_set_sync_status(self, new_status: SyncStatus) -> bool:
        if not self.sync_status.last_update:
            return True
        if self.sync_status.last_update < self.source_status.last_update:
            return True
        return not new_status.equal(self.sync_status)
