"""
Status writer for RootSync and RepoSync objects.

The reconciler reports the commit it read (status.source) and the outcome
of applying it (status.sync) on its own RootSync/RepoSync. Every write
reads the object first. A status too large for etcd is retried with the
error list truncated to half its previous length until it fits.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from kubernetes.client.rest import ApiException

from reconciler import errors
from reconciler.config import Config
from reconciler.metrics import Metrics
from reconciler.state import SourceStatus, SyncStatus

logger = logging.getLogger("reconciler.status")

CONFIGSYNC_GROUP = "configsync.gke.io"
CONFIGSYNC_VERSION = "v1beta1"
ROOT_SYNC_PLURAL = "rootsyncs"
REPO_SYNC_PLURAL = "reposyncs"

DEFAULT_DENOMINATOR = 1

SYNCING_CONDITION = "Syncing"


def timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def truncate(errs: Optional[errors.MultiError], denominator: int) -> Tuple[List[dict], dict]:
    """
    Status entries for errs, keeping 1/denominator of them

    Returns:
        Tuple of (error entries, errorSummary)
    """
    entries = errors.to_status(errs)
    kept = entries[:len(entries) // denominator]
    summary = {
        "totalCount": len(entries),
        "truncated": denominator != 1,
        "errorCountAfterTruncation": len(kept),
    }
    return kept, summary


def summarize(source: dict, sync: dict) -> Tuple[List[str], dict]:
    """Combined error sources and summary of the source and sync status"""
    sources = []
    if source.get("errors"):
        sources.append("SourceError")
    if sync.get("errors"):
        sources.append("SyncError")
    summary = {"totalCount": 0, "truncated": False, "errorCountAfterTruncation": 0}
    for part in (source.get("errorSummary"), sync.get("errorSummary")):
        if not part:
            continue
        summary["totalCount"] += part.get("totalCount", 0)
        summary["errorCountAfterTruncation"] += part.get("errorCountAfterTruncation", 0)
        summary["truncated"] = summary["truncated"] or part.get("truncated", False)
    return sources, summary


def set_syncing_condition(rsync: dict, syncing: bool, reason: str, message: str, commit: str,
                          error_sources: List[str], summary: dict, ts: float):
    status = rsync.setdefault("status", {})
    conditions = [c for c in status.get("conditions") or [] if c.get("type") != SYNCING_CONDITION]
    previous = next((c for c in status.get("conditions") or [] if c.get("type") == SYNCING_CONDITION), None)
    condition_status = "True" if syncing else "False"
    transition = timestamp(ts)
    if previous is not None and previous.get("status") == condition_status:
        transition = previous.get("lastTransitionTime", transition)
    conditions.append({
        "type": SYNCING_CONDITION,
        "status": condition_status,
        "reason": reason,
        "message": message,
        "commit": commit,
        "errorSourceRefs": error_sources,
        "errorSummary": summary,
        "lastUpdateTime": timestamp(ts),
        "lastTransitionTime": transition,
    })
    status["conditions"] = conditions


class StatusWriter:
    """Writes source and sync status onto the scope's RootSync or RepoSync"""

    def __init__(self, kube, scope: str, sync_name: str, sync_namespace: str,
                 git_repo: str = "", git_branch: str = "", git_rev: str = "", policy_dir: str = "",
                 metrics: Optional[Metrics] = None, syncing=lambda: False):
        self.kube = kube
        self.scope = scope
        self.sync_name = sync_name
        self.namespace = sync_namespace if scope == Config.ROOT_SCOPE else scope
        self.plural = ROOT_SYNC_PLURAL if scope == Config.ROOT_SCOPE else REPO_SYNC_PLURAL
        self.kind = "RootSync" if scope == Config.ROOT_SCOPE else "RepoSync"
        self.git = {"repo": git_repo, "branch": git_branch, "revision": git_rev, "dir": policy_dir}
        self.metrics = metrics or Metrics(scope)
        self._syncing = syncing
        self._mux = threading.Lock()

    # ------------------------------------------------------------------
    # API access
    # ------------------------------------------------------------------

    def _get(self) -> dict:
        try:
            return self.kube.custom.get_namespaced_custom_object(
                CONFIGSYNC_GROUP, CONFIGSYNC_VERSION, self.namespace, self.plural, self.sync_name)
        except ApiException as e:
            raise errors.api_server_error(e, f"failed to get {self.kind} {self.namespace}/{self.sync_name}")

    def _update(self, rsync: dict):
        self.kube.custom.replace_namespaced_custom_object_status(
            CONFIGSYNC_GROUP, CONFIGSYNC_VERSION, self.namespace, self.plural, self.sync_name, rsync)

    def _source_block(self, new_status: SourceStatus, denominator: int) -> dict:
        entries, summary = truncate(new_status.errs, denominator)
        return {
            "commit": new_status.commit,
            "git": dict(self.git),
            "errors": entries,
            "errorSummary": summary,
            "lastUpdate": timestamp(new_status.last_update),
        }

    # ------------------------------------------------------------------
    # Source status
    # ------------------------------------------------------------------

    def set_source_status(self, new_status: SourceStatus):
        """
        Record the outcome of reading or parsing the source

        Raises:
            ConfigSyncError: API server error when the status cannot be written
        """
        with self._mux:
            self._set_source_status(new_status, DEFAULT_DENOMINATOR)

    def _set_source_status(self, new_status: SourceStatus, denominator: int):
        if denominator <= 0:
            raise errors.internal_error("the denominator must be a positive number")

        rsync = self._get()
        status = rsync.setdefault("status", {})
        status["source"] = self._source_block(new_status, denominator)
        summary = status["source"]["errorSummary"]
        self.metrics.record_reconciler_errors("source", summary["totalCount"])
        set_syncing_condition(rsync, summary["totalCount"] == 0, "Source", "Source", new_status.commit,
                              ["SourceError"] if summary["totalCount"] else [], summary,
                              new_status.last_update)

        try:
            self._update(rsync)
        except ApiException as e:
            if errors.is_request_too_large_error(e) and summary["errorCountAfterTruncation"] > 0:
                logger.info(f"Failed to update {self.kind} source status (total error count: "
                            f"{summary['totalCount']}, denominator: {denominator}): {e}.")
                return self._set_source_status(new_status, denominator * 2)
            raise errors.api_server_error(e, f"failed to update {self.kind} source status")

    # ------------------------------------------------------------------
    # Source and sync status
    # ------------------------------------------------------------------

    def set_source_and_sync_status(self, new_source: SourceStatus, new_sync: SyncStatus):
        """
        Record both statuses in a single request

        Two updates in a row on the same object tend to conflict, so a
        successful parse is reported together with the sync result.

        Raises:
            ConfigSyncError: API server error when the status cannot be written
        """
        with self._mux:
            self._set_source_and_sync_status(new_source, new_sync, DEFAULT_DENOMINATOR)

    def _set_source_and_sync_status(self, new_source: SourceStatus, new_sync: SyncStatus, denominator: int):
        if denominator <= 0:
            raise errors.internal_error("the denominator must be a positive number")

        rsync = self._get()
        status = rsync.setdefault("status", {})
        status["source"] = self._source_block(new_source, denominator)

        entries, summary = truncate(new_sync.errs, denominator)
        status["sync"] = {
            "commit": new_sync.commit,
            "git": dict(self.git),
            "errors": entries,
            "errorSummary": summary,
            "lastUpdate": timestamp(new_sync.last_update),
        }
        self.metrics.record_reconciler_errors("sync", summary["totalCount"])

        syncing = new_sync.syncing or self._syncing()
        error_sources, combined = summarize(status["source"], status["sync"])
        if syncing:
            set_syncing_condition(rsync, True, "Sync", "Syncing", new_sync.commit,
                                  error_sources, combined, new_sync.last_update)
        else:
            if combined["totalCount"] == 0:
                status["lastSyncedCommit"] = new_sync.commit
            set_syncing_condition(rsync, False, "Sync", "Sync Completed", new_sync.commit,
                                  error_sources, combined, new_sync.last_update)

        try:
            self._update(rsync)
        except ApiException as e:
            truncatable = status["source"]["errorSummary"]["errorCountAfterTruncation"] + len(entries)
            if errors.is_request_too_large_error(e) and truncatable > 0:
                logger.info(f"Failed to update {self.kind} sync status (total error count: "
                            f"{combined['totalCount']}, denominator: {denominator}): {e}.")
                return self._set_source_and_sync_status(new_source, new_sync, denominator * 2)
            raise errors.api_server_error(e, f"failed to update {self.kind} sync status")

        if not syncing:
            self.metrics.record_last_sync(new_sync.commit, new_sync.last_update)
