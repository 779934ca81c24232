"""
Events emitted by the declarative apply engine.

A run of the engine produces a finite, lazily generated sequence of events.
The consumer iterates it synchronously; exhaustion of the iterator means the
run is over and no further events follow. Each event class carries a fixed
``type`` tag so consumers can dispatch on it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from reconciler.objects import ObjectIdentity


class EventType(Enum):
    INIT = "Init"
    ACTION_GROUP = "ActionGroup"
    ERROR = "Error"
    WAIT = "Wait"
    APPLY = "Apply"
    PRUNE = "Prune"


class ApplyOperation(Enum):
    CREATED = "Created"
    CONFIGURED = "Configured"
    UNCHANGED = "Unchanged"
    FAILED = "Failed"


class PruneOperation(Enum):
    PRUNED = "Pruned"
    SKIPPED = "PruneSkipped"
    FAILED = "Failed"


class WaitOperation(Enum):
    PENDING = "ReconcilePending"
    RECONCILED = "Reconciled"
    SKIPPED = "ReconcileSkipped"
    FAILED = "ReconcileFailed"
    TIMEOUT = "ReconcileTimeout"


# ============================================================================
# ENGINE ERRORS
# ============================================================================

class UnknownTypeError(Exception):
    """The API server has no resource for the object's kind (yet)"""

    def __init__(self, gvk, cause: Optional[Exception] = None):
        self.gvk = gvk
        self.cause = cause
        super().__init__(f"unknown resource type: {gvk!s}")


class InventoryOverlapError(Exception):
    """The object is already tracked by a different inventory"""

    def __init__(self, identity: ObjectIdentity, owner: str, resource: Optional[dict] = None):
        self.identity = identity
        self.owner = owner
        self.resource = resource
        super().__init__(f"inventory overlap: {identity} is owned by inventory {owner!r}")


class ApplyRunError(Exception):
    """The API server rejected an apply, delete or get request"""

    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(str(cause))


# ============================================================================
# EVENTS
# ============================================================================

@dataclass
class InitEvent:
    action_groups: List[str] = field(default_factory=list)
    type = EventType.INIT


@dataclass
class ActionGroupEvent:
    group: str
    action: str
    status: str
    type = EventType.ACTION_GROUP


@dataclass
class ErrorEvent:
    error: Exception
    type = EventType.ERROR


@dataclass
class WaitEvent:
    identifier: ObjectIdentity
    operation: WaitOperation
    type = EventType.WAIT


@dataclass
class ApplyEvent:
    identifier: ObjectIdentity
    operation: ApplyOperation
    error: Optional[Exception] = None
    resource: Optional[dict] = None
    type = EventType.APPLY


@dataclass
class PruneEvent:
    identifier: ObjectIdentity
    operation: PruneOperation
    error: Optional[Exception] = None
    resource: Optional[dict] = None
    type = EventType.PRUNE
