"""
Per-cycle statistics of the applier.

Purely observational; a fresh ApplyStats is created for every sync.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Set

from reconciler.objects import ObjectIdentity


@dataclass
class ApplyEventStats:
    event_by_op: Counter = field(default_factory=Counter)
    err_count: int = 0

    def empty(self) -> bool:
        return self.err_count == 0 and sum(self.event_by_op.values()) == 0

    def string(self) -> str:
        parts = [f"{op.value}: {count}" for op, count in sorted(self.event_by_op.items(), key=lambda i: i[0].value)]
        if self.err_count:
            parts.append(f"errors: {self.err_count}")
        return ", ".join(parts)


@dataclass
class PruneEventStats(ApplyEventStats):
    pass


@dataclass
class DisabledObjStats:
    total: int = 0
    succeeded: int = 0

    def empty(self) -> bool:
        return self.total == 0

    def string(self) -> str:
        return f"disabled {self.succeeded} out of {self.total} objects"


@dataclass
class ApplyStats:
    """Statistics for one applier sync"""
    apply_event: ApplyEventStats = field(default_factory=ApplyEventStats)
    prune_event: PruneEventStats = field(default_factory=PruneEventStats)
    disable_objs: DisabledObjStats = field(default_factory=DisabledObjStats)
    error_type_events: int = 0
    objs_reconciled: Set[ObjectIdentity] = field(default_factory=set)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def empty(self) -> bool:
        return (self.error_type_events == 0 and self.apply_event.empty()
                and self.prune_event.empty() and self.disable_objs.empty())

    def string(self) -> str:
        parts = []
        if self.error_type_events:
            parts.append(f"error events: {self.error_type_events}")
        if not self.apply_event.empty():
            parts.append(f"apply events ({self.apply_event.string()})")
        if not self.prune_event.empty():
            parts.append(f"prune events ({self.prune_event.string()})")
        if not self.disable_objs.empty():
            parts.append(self.disable_objs.string())
        return "; ".join(parts)

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        return {
            "applied": {op.value: count for op, count in self.apply_event.event_by_op.items()},
            "apply_errors": self.apply_event.err_count,
            "pruned": {op.value: count for op, count in self.prune_event.event_by_op.items()},
            "prune_errors": self.prune_event.err_count,
            "disabled": self.disable_objs.succeeded,
            "disable_total": self.disable_objs.total,
            "error_events": self.error_type_events,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds(),
        }
