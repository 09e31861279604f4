"""Per-session review state for detected duplicate pairs."""

from __future__ import annotations

import logging

from backlog_cleaner.errors import ResolutionError
from backlog_cleaner.models import DuplicateGroup, GroupState

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[GroupState, frozenset[GroupState]] = {
    GroupState.PENDING: frozenset({
        GroupState.MERGE_IN_PROGRESS,
        GroupState.MARKED_NOT_DUPLICATE,
        GroupState.IGNORED,
    }),
    GroupState.MERGE_IN_PROGRESS: frozenset({GroupState.RESOLVED, GroupState.PENDING}),
}

SETTLED_STATES = frozenset({
    GroupState.RESOLVED,
    GroupState.MARKED_NOT_DUPLICATE,
    GroupState.IGNORED,
})


def pair_id(keys: tuple[str, str] | list[str]) -> frozenset[str]:
    return frozenset(keys)


class ReviewSession:
    """Tracks each pair from pending to a settled state.

    Settled pairs (resolved, marked not duplicate, ignored) are never
    offered again, even if a later detection run finds them.
    """

    def __init__(self) -> None:
        self._groups: dict[frozenset[str], DuplicateGroup] = {}
        self._states: dict[frozenset[str], GroupState] = {}

    def offer(self, groups: list[DuplicateGroup]) -> list[DuplicateGroup]:
        """Register freshly detected groups; return the ones still open for review."""
        active = []
        for group in groups:
            pid = pair_id(group.keys)
            state = self._states.setdefault(pid, GroupState.PENDING)
            if state in SETTLED_STATES:
                continue
            self._groups[pid] = group
            active.append(group)
        return active

    def state(self, keys: tuple[str, str]) -> GroupState:
        pid = pair_id(keys)
        if pid not in self._states:
            raise ResolutionError(f"Pair {keys[0]}/{keys[1]} was not detected in this session")
        return self._states[pid]

    def is_pending(self, keys: tuple[str, str]) -> bool:
        return self._states.get(pair_id(keys)) == GroupState.PENDING

    def active_groups(self) -> list[DuplicateGroup]:
        return [
            group for pid, group in self._groups.items()
            if self._states[pid] not in SETTLED_STATES
        ]

    def _move(self, keys: tuple[str, str], target: GroupState) -> None:
        current = self.state(keys)
        if target not in _TRANSITIONS.get(current, frozenset()):
            raise ResolutionError(
                f"Pair {keys[0]}/{keys[1]} cannot move from {current.value} to {target.value}"
            )
        self._states[pair_id(keys)] = target
        logger.info(
            "Pair state changed",
            extra={"pair": list(keys), "from": current.value, "to": target.value},
        )

    def begin_merge(self, keys: tuple[str, str]) -> None:
        self._move(keys, GroupState.MERGE_IN_PROGRESS)

    def finish_merge(self, keys: tuple[str, str], succeeded: bool) -> None:
        """Settle a merge, or return the pair to pending if it failed or needs input."""
        self._move(keys, GroupState.RESOLVED if succeeded else GroupState.PENDING)

    def mark_not_duplicate(self, keys: tuple[str, str]) -> None:
        self._move(keys, GroupState.MARKED_NOT_DUPLICATE)

    def ignore(self, keys: tuple[str, str]) -> None:
        self._move(keys, GroupState.IGNORED)
