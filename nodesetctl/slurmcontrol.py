"""Keeps Slurm nodes in step with the NodeSet pods that back them."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http import HTTPStatus

from .models import NodeSet, Pod
from .slurm import (
    Clusters,
    InMemorySlurmClient,
    JobState,
    NodeState,
    PodInfo,
    SlurmError,
    TimeStore,
    UpdateNodeRequest,
    expand_hostlist,
)
from .utils import get_node_name

logger = logging.getLogger(__name__)

NODE_REASON_PREFIX = "slurm-operator:"

# The longest representable duration, used for jobs without a time limit.
INFINITE_DURATION = timedelta(microseconds=(2**63 - 1) // 1000)

_TOLERATED_MESSAGES = frozenset({HTTPStatus.NOT_FOUND.phrase, HTTPStatus.NO_CONTENT.phrase})


def tolerate_error(err: BaseException | None) -> bool:
    """Return True for no error, or for an error saying Not Found or No Content."""
    if err is None:
        return True
    return str(err) in _TOLERATED_MESSAGES


@dataclass
class SlurmNodeStatus:
    """Counts of Slurm nodes by base state and by flag state."""

    total: int = 0

    allocated: int = 0
    down: int = 0
    error: int = 0
    future: int = 0
    idle: int = 0
    mixed: int = 0
    unknown: int = 0

    completing: int = 0
    drain: int = 0
    fail: int = 0
    invalid: int = 0
    invalid_reg: int = 0
    maintenance: int = 0
    not_responding: int = 0
    undrain: int = 0


_BASE_STATES = (
    (NodeState.ALLOCATED, "allocated"),
    (NodeState.DOWN, "down"),
    (NodeState.ERROR, "error"),
    (NodeState.FUTURE, "future"),
    (NodeState.IDLE, "idle"),
    (NodeState.MIXED, "mixed"),
    (NodeState.UNKNOWN, "unknown"),
)

_FLAG_STATES = (
    (NodeState.COMPLETING, "completing"),
    (NodeState.DRAIN, "drain"),
    (NodeState.FAIL, "fail"),
    (NodeState.INVALID, "invalid"),
    (NodeState.INVALID_REG, "invalid_reg"),
    (NodeState.MAINTENANCE, "maintenance"),
    (NodeState.NOT_RESPONDING, "not_responding"),
    (NodeState.UNDRAIN, "undrain"),
)


def _pod_node_names(pods: Iterable[Pod]) -> set[str]:
    return {get_node_name(pod) for pod in pods}


def _deadline(start: datetime, limit: timedelta) -> datetime:
    try:
        return start + limit
    except OverflowError:
        return datetime.max.replace(tzinfo=timezone.utc)


class SlurmControl:
    """Drains, undrains and inspects the Slurm nodes of a NodeSet's pods."""

    def __init__(self, clusters: Clusters) -> None:
        self._clusters = clusters

    def _lookup_client(self, nodeset: NodeSet) -> InMemorySlurmClient | None:
        return self._clusters.get((nodeset.namespace, nodeset.cluster_name))

    def get_node_names(self, nodeset: NodeSet, pods: Iterable[Pod]) -> list[str]:
        """Return the names of registered Slurm nodes that belong to the given pods."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot get node names", nodeset.name)
            return []
        nodes = client.list_nodes()
        wanted = _pod_node_names(pods)
        return [node.name for node in nodes if node.name in wanted]

    def update_node_with_pod_info(self, nodeset: NodeSet, pod: Pod) -> None:
        """Store the pod's namespace and name in its Slurm node's comment."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot update pod info", nodeset.name)
            return
        node_name = get_node_name(pod)
        try:
            node = client.get_node(node_name)
        except SlurmError as err:
            if tolerate_error(err):
                return
            raise

        pod_info = PodInfo(namespace=pod.namespace, pod_name=pod.name)
        try:
            old_info = PodInfo.parse(node.comment)
        except ValueError:
            old_info = PodInfo()
        if old_info == pod_info:
            logger.debug("Node %s already contains pod info, skipping update", node.name)
            return

        logger.info("Update Slurm Node %s with Kubernetes Pod info %s", node.name, pod_info)
        try:
            client.update_node(node.name, UpdateNodeRequest(comment=pod_info.to_string()))
        except SlurmError as err:
            if not tolerate_error(err):
                raise

    def make_node_drain(self, nodeset: NodeSet, pod: Pod, reason: str) -> None:
        """Add the DRAIN state to the pod's Slurm node."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot drain node", nodeset.name)
            return
        try:
            node = client.get_node(get_node_name(pod))
        except SlurmError as err:
            if tolerate_error(err):
                return
            raise

        logger.debug("make slurm node %s drain", node.name)
        request = UpdateNodeRequest(
            state=[NodeState.DRAIN], reason=f"{NODE_REASON_PREFIX} {reason}"
        )
        try:
            client.update_node(node.name, request)
        except SlurmError as err:
            if not tolerate_error(err):
                raise

    def make_node_undrain(self, nodeset: NodeSet, pod: Pod, reason: str) -> None:
        """Remove the DRAIN state, unless the node was drained by someone else."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot undrain node", nodeset.name)
            return
        try:
            node = client.get_node(get_node_name(pod))
        except SlurmError as err:
            if tolerate_error(err):
                return
            raise

        node_reason = node.reason or ""
        if NodeState.DRAIN not in node.state or NodeState.UNDRAIN in node.state:
            logger.debug("Node %s is already undrained, skipping undrain request", node.name)
            return
        if node_reason and NODE_REASON_PREFIX not in node_reason:
            logger.info(
                "Node %s was drained but not by slurm-operator, skipping undrain request: %s",
                node.name,
                node_reason,
            )
            return

        logger.debug("make slurm node %s undrain", node.name)
        request = UpdateNodeRequest(
            state=[NodeState.UNDRAIN], reason=f"{NODE_REASON_PREFIX} {reason}"
        )
        try:
            client.update_node(node.name, request)
        except SlurmError as err:
            if not tolerate_error(err):
                raise

    def is_node_drain(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Return True if the pod's Slurm node has DRAIN, or cannot be looked up."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot check drain", nodeset.name)
            return True
        try:
            node = client.get_node(get_node_name(pod))
        except SlurmError as err:
            if tolerate_error(err):
                return True
            raise
        return NodeState.DRAIN in node.state

    def is_node_drained(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Return True if the node is IDLE or DOWN and also DRAIN."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot check drained", nodeset.name)
            return True
        try:
            node = client.get_node(get_node_name(pod))
        except SlurmError as err:
            if tolerate_error(err):
                return True
            raise
        base = bool(node.state & {NodeState.IDLE, NodeState.DOWN})
        return base and NodeState.DRAIN in node.state

    def calculate_node_status(self, nodeset: NodeSet, pods: Iterable[Pod]) -> SlurmNodeStatus:
        """Count the pods' Slurm nodes by state."""
        status = SlurmNodeStatus()
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot calculate status", nodeset.name)
            return status
        try:
            nodes = client.list_nodes()
        except SlurmError as err:
            if tolerate_error(err):
                return status
            raise

        wanted = _pod_node_names(pods)
        for node in nodes:
            if node.name not in wanted:
                continue
            status.total += 1
            for state, attr in _BASE_STATES:
                if state in node.state:
                    setattr(status, attr, getattr(status, attr) + 1)
                    break
            for state, attr in _FLAG_STATES:
                if state in node.state:
                    setattr(status, attr, getattr(status, attr) + 1)
        return status

    def get_node_deadlines(self, nodeset: NodeSet, pods: Iterable[Pod]) -> TimeStore:
        """Return, per Slurm node, the latest end time of its running jobs."""
        store = TimeStore(prefer_greater=True)
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot get deadlines", nodeset.name)
            return store

        wanted = _pod_node_names(pods)
        jobs = client.list_jobs()
        for job in jobs:
            if JobState.RUNNING not in job.job_state:
                continue
            try:
                node_names = expand_hostlist(job.nodes or "")
            except ValueError:
                logger.error("failed to expand job node hostlist for job %s", job.job_id)
                raise
            if wanted.isdisjoint(node_names):
                continue

            start = datetime.fromtimestamp(job.start_time or 0, tz=timezone.utc)
            limit = timedelta(minutes=job.time_limit or 0)
            if job.time_limit_infinite:
                limit = INFINITE_DURATION
            deadline = _deadline(start, limit)
            for name in node_names:
                store.push(name, deadline)
        return store