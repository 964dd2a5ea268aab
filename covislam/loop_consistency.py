"""Covisibility consistency check of loop candidates across consecutive keyframes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

DEFAULT_CONSISTENCY_THRESHOLD = 3


@dataclass(frozen=True)
class ConsistentGroup:
    """A loop candidate with its covisible keyframes and how long it has persisted."""

    keyframes: frozenset
    consistency: int


@dataclass
class ConsistencyResult:
    """Groups to carry into the next check and candidates consistent enough to try."""

    groups: list[ConsistentGroup] = field(default_factory=list)
    enough_consistent: list[Any] = field(default_factory=list)


def check_consistency(
    candidates: Sequence[Any],
    previous_groups: Sequence[ConsistentGroup],
    threshold: int = DEFAULT_CONSISTENCY_THRESHOLD,
) -> ConsistencyResult:
    """Match each candidate's covisibility group against the previous groups.

    A candidate group is consistent with a previous group when they share a
    keyframe; its consistency is then one more than the previous group's.
    Each previous group is carried forward at most once, and a candidate is
    accepted once its consistency reaches ``threshold``. Candidates that match
    no previous group start a new group at zero.
    """
    used = [False] * len(previous_groups)
    result = ConsistencyResult()

    for candidate in candidates:
        group = frozenset(candidate.connected_keyframes()) | {candidate}
        accepted = False
        matched_any = False

        for index, previous in enumerate(previous_groups):
            if group.isdisjoint(previous.keyframes):
                continue
            matched_any = True
            consistency = previous.consistency + 1
            if not used[index]:
                result.groups.append(ConsistentGroup(group, consistency))
                used[index] = True
            if consistency >= threshold and not accepted:
                result.enough_consistent.append(candidate)
                accepted = True

        if not matched_any:
            result.groups.append(ConsistentGroup(group, 0))

    return result