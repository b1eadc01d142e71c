"""Orderings used to choose which NodeSet pods to act on first."""

from __future__ import annotations

import functools
import re
from collections.abc import Iterable
from datetime import datetime, timezone

from .models import (
    ANNOTATION_POD_DEADLINE,
    ANNOTATION_POD_DELETION_COST,
    CONDITION_READY,
    CONDITION_TRUE,
    POD_PENDING,
    POD_RUNNING,
    POD_UNKNOWN,
    Pod,
)
from .utils import get_ordinal, is_healthy, is_pod_cordon, is_pod_ready

_PHASE_WEIGHT = {POD_PENDING: 0, POD_UNKNOWN: 1, POD_RUNNING: 2}
_INT_RE = re.compile(r"[+-]?[0-9]+")
_ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)


def _as_utc(t: datetime | None) -> datetime | None:
    if t is None:
        return None
    if t.tzinfo is None:
        return t.replace(tzinfo=timezone.utc)
    return t


def _times_equal(t1: datetime | None, t2: datetime | None) -> bool:
    return _as_utc(t1) == _as_utc(t2)


def _before(t1: datetime | None, t2: datetime | None) -> bool:
    return (_as_utc(t1) or _ZERO_TIME) < (_as_utc(t2) or _ZERO_TIME)


def _deletion_cost(pod: Pod) -> int:
    value = pod.annotations.get(ANNOTATION_POD_DELETION_COST, "")
    return int(value) if _INT_RE.fullmatch(value) else 0


def _deadline(pod: Pod) -> datetime | None:
    value = pod.annotations.get(ANNOTATION_POD_DEADLINE, "")
    if not value:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def _ready_time(pod: Pod) -> datetime | None:
    if is_pod_ready(pod):
        for condition in pod.status.conditions:
            if condition.type == CONDITION_READY and condition.status == CONDITION_TRUE:
                return condition.last_transition_time
    return None


def after_or_zero(t1: datetime | None, t2: datetime | None) -> bool:
    """Return True if t1 is after t2; a zero (None) time counts as after any other."""
    if t1 is None or t2 is None:
        return t1 is None
    return _as_utc(t1) > _as_utc(t2)


def active_pods_less(pod1: Pod, pod2: Pod) -> bool:
    """Return True if pod1 should be preferred over pod2 for deletion."""
    name1, name2 = pod1.spec.node_name, pod2.spec.node_name
    if name1 != name2 and (not name1 or not name2):
        return not name1

    weight1 = _PHASE_WEIGHT.get(pod1.status.phase, 0)
    weight2 = _PHASE_WEIGHT.get(pod2.status.phase, 0)
    if weight1 != weight2:
        return weight1 < weight2

    ready1, ready2 = is_pod_ready(pod1), is_pod_ready(pod2)
    if ready1 != ready2:
        return not ready1

    cost1, cost2 = _deletion_cost(pod1), _deletion_cost(pod2)
    if cost1 != cost2:
        return cost1 < cost2

    deadline1, deadline2 = _deadline(pod1), _deadline(pod2)
    if not _times_equal(deadline1, deadline2):
        return _before(deadline1, deadline2)

    cordon1, cordon2 = is_pod_cordon(pod1), is_pod_cordon(pod2)
    if cordon1 or cordon2:
        return cordon1

    ordinal1, ordinal2 = get_ordinal(pod1), get_ordinal(pod2)
    if ordinal1 != ordinal2:
        return ordinal1 > ordinal2

    if ready1 and ready2:
        ready_time1, ready_time2 = _ready_time(pod1), _ready_time(pod2)
        if not _times_equal(ready_time1, ready_time2):
            return after_or_zero(ready_time1, ready_time2)

    if not _times_equal(pod1.creation_timestamp, pod2.creation_timestamp):
        return after_or_zero(pod1.creation_timestamp, pod2.creation_timestamp)

    return False


def _active_pods_cmp(pod1: Pod, pod2: Pod) -> int:
    if active_pods_less(pod1, pod2):
        return -1
    if active_pods_less(pod2, pod1):
        return 1
    return 0


def sort_active_pods(pods: Iterable[Pod]) -> list[Pod]:
    """Return the pods ordered with the best deletion candidates first."""
    return sorted(pods, key=functools.cmp_to_key(_active_pods_cmp))


def split_active_pods(pods: Iterable[Pod] | None, partition: int) -> tuple[list[Pod], list[Pod]]:
    """Sort pods for deletion and split them at partition (clamped to the list)."""
    ordered = sort_active_pods(pods or [])
    pivot = min(max(partition, 0), len(ordered))
    return ordered[:pivot], ordered[pivot:]


def sort_by_creation_timestamp(pods: Iterable[Pod]) -> list[Pod]:
    """Return the pods oldest first, with names breaking ties."""
    return sorted(
        pods, key=lambda p: (_as_utc(p.creation_timestamp) or _ZERO_TIME, p.name)
    )


def split_unhealthy_pods(pods: Iterable[Pod] | None) -> tuple[list[Pod], list[Pod]]:
    """Split pods, ordered by creation time, at the number of unhealthy pods."""
    pods = list(pods or [])
    num_unhealthy = sum(1 for pod in pods if not is_healthy(pod))
    ordered = sort_by_creation_timestamp(pods)
    return ordered[:num_unhealthy], ordered[num_unhealthy:]