"""Ordering of pods by how much they are preferred for deletion."""

from __future__ import annotations

import functools
from datetime import datetime, timezone
from typing import Iterable, Optional

from .model import (
    ANNOTATION_POD_DEADLINE,
    ANNOTATION_POD_DELETION_COST,
    CONDITION_READY,
    CONDITION_TRUE,
    PHASE_PENDING,
    PHASE_RUNNING,
    PHASE_UNKNOWN,
    Pod,
)
from .utils import get_ordinal, is_pod_cordon

_PHASE_WEIGHT = {PHASE_PENDING: 0, PHASE_UNKNOWN: 1, PHASE_RUNNING: 2}
_ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)


def _deletion_cost(pod: Pod) -> int:
    try:
        return int(pod.annotations.get(ANNOTATION_POD_DELETION_COST, ""))
    except ValueError:
        return 0


def _deadline(pod: Pod) -> datetime:
    text = pod.annotations.get(ANNOTATION_POD_DEADLINE, "")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        return _ZERO_TIME
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _ready_time(pod: Pod) -> Optional[datetime]:
    if pod.is_ready():
        for condition in pod.conditions:
            if condition.type == CONDITION_READY and condition.status == CONDITION_TRUE:
                return condition.last_transition_time
    return None


def after_or_zero(t1: Optional[datetime], t2: Optional[datetime]) -> bool:
    """True if t1 is after t2; a zero (None) time counts as after any other."""
    if t1 is None or t2 is None:
        return t1 is None
    return t1 > t2


def active_pods_less(pod1: Pod, pod2: Pod) -> bool:
    """True if ``pod1`` should be deleted before ``pod2``."""
    if pod1.node_name != pod2.node_name and (not pod1.node_name or not pod2.node_name):
        return not pod1.node_name

    weight1 = _PHASE_WEIGHT.get(pod1.phase, 0)
    weight2 = _PHASE_WEIGHT.get(pod2.phase, 0)
    if weight1 != weight2:
        return weight1 < weight2

    ready1, ready2 = pod1.is_ready(), pod2.is_ready()
    if ready1 != ready2:
        return not ready1

    cost1, cost2 = _deletion_cost(pod1), _deletion_cost(pod2)
    if cost1 != cost2:
        return cost1 < cost2

    deadline1, deadline2 = _deadline(pod1), _deadline(pod2)
    if deadline1 != deadline2:
        return deadline1 < deadline2

    cordon1, cordon2 = is_pod_cordon(pod1), is_pod_cordon(pod2)
    if cordon1 or cordon2:
        return cordon1

    ordinal1, ordinal2 = get_ordinal(pod1), get_ordinal(pod2)
    if ordinal1 != ordinal2:
        return ordinal1 > ordinal2

    if ready1 and ready2:
        ready_time1, ready_time2 = _ready_time(pod1), _ready_time(pod2)
        if ready_time1 != ready_time2:
            return after_or_zero(ready_time1, ready_time2)

    if pod1.creation_timestamp != pod2.creation_timestamp:
        return after_or_zero(pod1.creation_timestamp, pod2.creation_timestamp)

    return False


def _compare(pod1: Pod, pod2: Pod) -> int:
    if active_pods_less(pod1, pod2):
        return -1
    if active_pods_less(pod2, pod1):
        return 1
    return 0


def sort_active_pods(pods: Iterable[Pod]) -> list[Pod]:
    """Return the pods ordered from most to least preferred for deletion."""
    return sorted(pods, key=functools.cmp_to_key(_compare))


def split_active_pods(
    pods: Optional[Iterable[Pod]], partition: int
) -> tuple[list[Pod], list[Pod]]:
    """Sort the pods and split them at ``partition``, clamped to the list bounds."""
    ordered = sort_active_pods(pods or [])
    pivot = min(max(partition, 0), len(ordered))
    return ordered[:pivot], ordered[pivot:]