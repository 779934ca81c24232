"""
Control loop of one reconciler scope.

Three timers drive the loop:
- poll: look for a new commit (reimport)
- resync: re-run every stage even when nothing changed
- retry: retry a failed cycle once its backoff expired, or react to a
  management conflict or pending watch update noticed by the remediator

One cycle reads the source, parses it, applies it, persists the status and
then either checkpoints or invalidates the reconciler state.
"""

import time
import logging
import threading
from typing import Callable, Optional

from reconciler import errors
from reconciler.applier import Applier
from reconciler.metrics import Metrics, status_label
from reconciler.parser import Parser
from reconciler.remediator import Remediator
from reconciler.source import SourceReader
from reconciler.state import ReconcilerState, SourceState, SourceStatus, SyncStatus
from reconciler.status import StatusWriter

logger = logging.getLogger("reconciler.loop")

TRIGGER_RESYNC = "resync"
TRIGGER_REIMPORT = "reimport"
TRIGGER_RETRY = "retry"
TRIGGER_MANAGEMENT_CONFLICT = "managementConflict"
TRIGGER_WATCH_UPDATE = "watchUpdate"


class Reconciler:
    """Everything one scope needs to run its read, parse and update cycles"""

    def __init__(self, source: SourceReader, parser: Parser, applier: Applier, remediator: Remediator,
                 status_writer: StatusWriter, metrics: Optional[Metrics] = None,
                 poll_period: float = 15.0, resync_period: float = 3600.0, retry_period: float = 1.0,
                 clock: Callable[[], float] = time.time):
        self.source = source
        self.parser = parser
        self.applier = applier
        self.remediator = remediator
        self.status_writer = status_writer
        self.metrics = metrics or Metrics()
        self.poll_period = poll_period
        self.resync_period = resync_period
        self.retry_period = retry_period
        self._clock = clock
        self.state = ReconcilerState(clock)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def run(self, stop_event: threading.Event):
        """
        Run cycles until stop_event is set

        The stop event is only checked between cycles; a cycle in flight
        always completes.
        """
        now = time.monotonic()
        next_poll = now
        next_resync = now + self.resync_period
        next_retry = now + self.retry_period

        while not stop_event.is_set():
            timeout = max(0.0, min(next_poll, next_resync, next_retry) - time.monotonic())
            if stop_event.wait(timeout):
                break
            now = time.monotonic()
            if now >= next_resync:
                next_resync = now + self.resync_period
                logger.info("It is time for a force-resync")
                # The source snapshot is kept so the files are not read again
                self.state.reset_partial_cache()
                self.guarded_cycle(TRIGGER_RESYNC)
            elif now >= next_poll:
                next_poll = now + self.poll_period
                self.guarded_cycle(TRIGGER_REIMPORT)
            elif now >= next_retry:
                next_retry = now + self.retry_period
                trigger = self.retry_trigger()
                if trigger is not None:
                    self.guarded_cycle(trigger)
        logger.info("Reconciler loop stopped")

    def retry_trigger(self) -> Optional[str]:
        """The trigger of the retry timer, or None when there is nothing to do"""
        if self.remediator.management_conflict():
            logger.info("One of the watchers noticed a management conflict")
            self.state.reset_partial_cache()
            return TRIGGER_MANAGEMENT_CONFLICT
        if self.state.cache.need_to_retry and self.state.ready_to_retry():
            logger.info("The last reconciliation failed")
            return TRIGGER_RETRY
        if self.remediator.needs_update():
            logger.info("Some watches need to be updated")
            return TRIGGER_WATCH_UPDATE
        return None

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def guarded_cycle(self, trigger: str):
        """Run one cycle; an unexpected failure is retried like any other cycle error"""
        try:
            self.run_cycle(trigger)
        except Exception as e:
            logger.error(f"Unexpected error in reconciliation cycle: {e}", exc_info=True)
            self.state.invalidate(errors.append(None, errors.internal_error(
                f"unexpected error during the {trigger} cycle: {e}")))

    def run_cycle(self, trigger: str):
        """Run one read, parse and update cycle"""
        try:
            commit, policy_dir = self.source.source_commit_and_dir()
        except errors.ConfigSyncError as e:
            errs = errors.append(None, e)
            status_err = self._set_source_status(SourceStatus(errs=errs, last_update=self._clock()))
            self.state.invalidate(errors.append(errs, status_err))
            return

        old_policy_dir = self.state.cache.source.policy_dir
        errs = self.read(trigger, SourceState(commit=commit, policy_dir=policy_dir))
        if errs is not None:
            self.state.invalidate(errs)
            return

        # A former cycle for this directory either succeeded or is retried by the retry timer
        if trigger == TRIGGER_REIMPORT and old_policy_dir == self.state.cache.source.policy_dir:
            return

        errs = self.parse_and_update(trigger)
        if errs is not None:
            self.state.invalidate(errs)
            return

        # Only checkpoint after every stage succeeded, status update included
        self.state.checkpoint()

    def read(self, trigger: str, source_state: SourceState) -> Optional[errors.MultiError]:
        """Read the files of a new source snapshot into the cache"""
        if source_state.policy_dir == self.state.cache.source.policy_dir:
            return None

        logger.info(f"New source changes ({source_state.policy_dir}) detected, reset the cache")
        self.state.reset_cache()

        start = time.time()
        errs = None
        try:
            self.state.cache.source = self.source.read_config_files(source_state)
        except errors.ConfigSyncError as e:
            errs = errors.append(None, e)
        self.metrics.record_parser_duration(trigger, "read", status_label(errs), start)
        if errs is None:
            return None

        new_status = SourceStatus(commit=source_state.commit, errs=errs, last_update=self._clock())
        return errors.append(errs, self._set_source_status(new_status))

    def parse_source(self, trigger: str) -> Optional[errors.MultiError]:
        if self.state.cache.has_parser_result:
            return None

        start = time.time()
        errs = None
        try:
            objs = self.parser.parse(self.state.cache.source)
        except errors.MultiError as e:
            errs = e
        self.metrics.record_parser_duration(trigger, "parse", status_label(errs), start)
        self.metrics.record_reconciler_errors("parsing", len(errs) if errs else 0)
        if errs is not None:
            return errs

        self.state.cache.set_parser_result(objs)
        return None

    def parse_and_update(self, trigger: str) -> Optional[errors.MultiError]:
        cache = self.state.cache
        source_errs = self.parse_source(trigger)
        if source_errs is not None:
            new_status = SourceStatus(commit=cache.source.commit, errs=source_errs, last_update=self._clock())
            return errors.append(source_errs, self._set_source_status(new_status))

        start = time.time()
        sync_errs = self.update()
        self.metrics.record_parser_duration(trigger, "update", status_label(sync_errs), start)

        now = self._clock()
        new_source = SourceStatus(commit=cache.source.commit, last_update=now)
        new_sync = SyncStatus(syncing=False, commit=cache.source.commit, errs=sync_errs, last_update=now)
        if self.state.need_to_set_source_status(new_source) or self.state.need_to_set_sync_status(new_sync):
            try:
                self.status_writer.set_source_and_sync_status(new_source, new_sync)
            except errors.ConfigSyncError as e:
                sync_errs = errors.append(sync_errs, e)
            else:
                self.state.source_status = new_source
                self.state.sync_status = new_sync
        return sync_errs

    def update(self) -> Optional[errors.MultiError]:
        """Apply the parsed objects and refresh the remediator's watches"""
        cache = self.state.cache
        objs = cache.parser_result
        self.metrics.record_declared_resources(len(objs))

        errs = None
        if not cache.has_applier_result:
            gvks, apply_errs = self.applier.apply(objs)
            errs = errors.append(errs, apply_errs)
            if apply_errs is None:
                cache.set_applier_result(gvks)
        else:
            gvks = cache.applier_result

        _, watch_errs = self.remediator.update(objs, gvks)
        errs = errors.append(errs, watch_errs)
        for conflict in self.remediator.conflict_errors():
            errs = errors.append(errs, conflict)
        return errs

    def _set_source_status(self, new_status: SourceStatus) -> Optional[errors.ConfigSyncError]:
        if not self.state.need_to_set_source_status(new_status):
            return None
        try:
            self.status_writer.set_source_status(new_status)
        except errors.ConfigSyncError as e:
            return e
        self.state.source_status = new_status
        return None
