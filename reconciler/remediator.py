"""
Remediator bookkeeping.

Tracks which GroupVersionKinds the reconciler should be watching for drift
and collects management conflicts reported by those watches. The loop polls
it every retry tick to decide whether another cycle is needed.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

from reconciler import errors
from reconciler.objects import GroupVersionKind, ObjectIdentity, gvk_of

logger = logging.getLogger("reconciler.remediator")


class Remediator:
    """Watched GVK set and management conflicts of one scope"""

    def __init__(self, scope: str):
        self.scope = scope
        self._lock = threading.Lock()
        self._watched: Set[GroupVersionKind] = set()
        self._needs_update = False
        self._conflict = False
        self._conflicts: Dict[ObjectIdentity, errors.ManagementConflictError] = {}

    def update(self, objs: Iterable[dict],
               applied_gvks: Optional[Set[GroupVersionKind]] = None
               ) -> Tuple[Set[GroupVersionKind], Optional[errors.MultiError]]:
        """
        Watch the kinds of the declared objects

        Args:
            objs: Declared objects of the cycle
            applied_gvks: Kinds the applier could sync; kinds outside it are
                not watched until their CRD exists

        Returns:
            Tuple of (watched GVKs, errors)
        """
        objs = list(objs)
        wanted = {gvk_of(obj) for obj in objs}
        if applied_gvks is not None:
            wanted &= set(applied_gvks)
        declared = {ObjectIdentity.of(obj) for obj in objs}

        with self._lock:
            added = wanted - self._watched
            removed = self._watched - wanted
            self._watched = wanted
            self._needs_update = False
            self._conflict = False
            # Conflicts on objects no longer declared cannot be resolved by this scope
            for identity in list(self._conflicts):
                if identity not in declared:
                    del self._conflicts[identity]

        if added:
            logger.info(f"Started watching {sorted(str(g) for g in added)}")
        if removed:
            logger.info(f"Stopped watching {sorted(str(g) for g in removed)}")
        return set(wanted), None

    def watched_gvks(self) -> Set[GroupVersionKind]:
        with self._lock:
            return set(self._watched)

    def set_needs_update(self):
        with self._lock:
            self._needs_update = True

    def needs_update(self) -> bool:
        with self._lock:
            return self._needs_update

    def add_conflict(self, err: errors.ManagementConflictError):
        """Record a conflict noticed by a watch"""
        identity = err.resources[0] if err.resources else None
        with self._lock:
            self._conflicts[identity] = err
            self._conflict = True
        logger.warning(f"Management conflict detected by the remediator: {err.message}")

    def remove_conflict(self, identity: ObjectIdentity):
        with self._lock:
            self._conflicts.pop(identity, None)

    def management_conflict(self) -> bool:
        with self._lock:
            return self._conflict

    def conflict_errors(self) -> List[errors.ManagementConflictError]:
        with self._lock:
            return list(self._conflicts.values())
