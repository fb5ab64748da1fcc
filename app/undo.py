from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from roster import Assignment, AssignmentId

INVERSE_CREATE = "create"
INVERSE_UPDATE = "update"
INVERSE_DELETE = "delete"
INVERSE_BULK_CREATE = "bulk_create"
INVERSE_BULK_DELETE = "bulk_delete"


@dataclass
class InverseOp:
    """One step that undoes a persisted mutation.

    ``kind`` names the operation to run on undo: ``delete`` removes
    ``target_ids``, ``create`` re-creates ``records``, ``update`` writes
    ``records[0]`` back over ``target_ids[0]``.
    """

    kind: str
    target_ids: List[AssignmentId] = field(default_factory=list)
    records: List[Assignment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "target_ids": list(self.target_ids),
            "records": [record.to_dict() for record in self.records],
        }


@dataclass
class UndoGroup:
    label: str = ""
    # Newest inverse first.
    ops: List[InverseOp] = field(default_factory=list)

    def add(self, op: InverseOp) -> None:
        self.ops.insert(0, op)

    def __len__(self) -> int:
        return len(self.ops)


class UndoLog:
    """Stack of undo groups, one group per planner gesture."""

    def __init__(self, max_groups: int = 50) -> None:
        self.max_groups = max(1, int(max_groups))
        self._groups: List[UndoGroup] = []
        self._open: Optional[UndoGroup] = None
        self._depth = 0

    def __len__(self) -> int:
        return len(self._groups)

    @property
    def can_undo(self) -> bool:
        return bool(self._groups)

    @property
    def groups(self) -> List[UndoGroup]:
        return list(self._groups)

    @property
    def current(self) -> Optional[UndoGroup]:
        """The group collecting inverses for the gesture in progress."""
        return self._open

    @contextmanager
    def gesture(
        self,
        label: str = "",
        *,
        join_last: bool = False,
        reopen: Optional[UndoGroup] = None,
    ) -> Iterator[UndoGroup]:
        """Collect every inverse recorded inside the block into one group.

        Nested blocks join the outermost group. With ``join_last`` the block
        reopens the newest group instead of starting a new one. ``reopen``
        names an earlier group to extend; it moves to the top of the stack
        and :class:`LookupError` is raised once it has left the log.
        """
        if self._open is None:
            if reopen is not None:
                self._open = self._take(reopen)
            elif join_last and self._groups:
                self._open = self._groups.pop()
            else:
                self._open = UndoGroup(label)
        self._depth += 1
        try:
            yield self._open
        finally:
            self._depth -= 1
            if self._depth == 0:
                group, self._open = self._open, None
                if group.ops:
                    self._push(group)

    def record(self, op: InverseOp) -> None:
        if self._open is not None:
            self._open.add(op)
            return
        group = UndoGroup(op.kind)
        group.add(op)
        self._push(group)

    def extend_last(self, op: InverseOp) -> None:
        """Attach a late inverse to the newest group."""
        if self._open is not None:
            self._open.add(op)
        elif self._groups:
            self._groups[-1].add(op)
        else:
            self.record(op)

    def find(self, assignment_id: AssignmentId) -> Optional[UndoGroup]:
        """Newest group with an inverse that targets ``assignment_id``."""
        for group in reversed(self._groups):
            if any(assignment_id in op.target_ids for op in group.ops):
                return group
        return None

    def holds(self, group: UndoGroup) -> bool:
        return any(candidate is group for candidate in self._groups)

    def pop(self) -> Optional[UndoGroup]:
        if not self._groups:
            return None
        return self._groups.pop()

    def restore(self, group: UndoGroup) -> None:
        """Put a group back on top, e.g. the inverses an interrupted undo did not run."""
        if group.ops:
            self._push(group)

    def clear(self) -> None:
        self._groups.clear()

    def _take(self, group: UndoGroup) -> UndoGroup:
        for index, candidate in enumerate(self._groups):
            if candidate is group:
                return self._groups.pop(index)
        raise LookupError(f"Undo group '{group.label}' is no longer in the log.")

    def _push(self, group: UndoGroup) -> None:
        self._groups.append(group)
        if len(self._groups) > self.max_groups:
            del self._groups[0 : len(self._groups) - self.max_groups]
