"""Slurm node and job records, an in-memory Slurm client and related helpers."""

from __future__ import annotations

import copy
import enum
import json
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from http import HTTPStatus


class NodeState(str, enum.Enum):
    """Base and flag states a Slurm node may report."""

    INVALID = "INVALID"
    UNKNOWN = "UNKNOWN"
    DOWN = "DOWN"
    IDLE = "IDLE"
    ALLOCATED = "ALLOCATED"
    ERROR = "ERROR"
    MIXED = "MIXED"
    FUTURE = "FUTURE"
    RESERVED = "RESERVED"
    UNDRAIN = "UNDRAIN"
    CLOUD = "CLOUD"
    RESUME = "RESUME"
    DRAIN = "DRAIN"
    COMPLETING = "COMPLETING"
    NOT_RESPONDING = "NOT_RESPONDING"
    POWERED_DOWN = "POWERED_DOWN"
    FAIL = "FAIL"
    POWERING_UP = "POWERING_UP"
    MAINTENANCE = "MAINTENANCE"
    REBOOT_REQUESTED = "REBOOT_REQUESTED"
    REBOOT_CANCELED = "REBOOT_CANCELED"
    POWERING_DOWN = "POWERING_DOWN"
    DYNAMIC_FUTURE = "DYNAMIC_FUTURE"
    REBOOT_ISSUED = "REBOOT_ISSUED"
    PLANNED = "PLANNED"
    INVALID_REG = "INVALID_REG"
    POWER_DOWN = "POWER_DOWN"
    POWER_UP = "POWER_UP"
    POWER_DRAIN = "POWER_DRAIN"
    DYNAMIC_NORM = "DYNAMIC_NORM"


class JobState(str, enum.Enum):
    """Base and flag states a Slurm job may report."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    NODE_FAIL = "NODE_FAIL"
    PREEMPTED = "PREEMPTED"
    BOOT_FAIL = "BOOT_FAIL"
    DEADLINE = "DEADLINE"
    OUT_OF_MEMORY = "OUT_OF_MEMORY"
    COMPLETING = "COMPLETING"
    CONFIGURING = "CONFIGURING"
    REQUEUED = "REQUEUED"
    RESIZING = "RESIZING"
    REVOKED = "REVOKED"
    SIGNALING = "SIGNALING"
    SPECIAL_EXIT = "SPECIAL_EXIT"
    STAGE_OUT = "STAGE_OUT"
    STOPPED = "STOPPED"


@dataclass
class SlurmNode:
    """A Slurm node as reported by the controller."""

    name: str
    state: set[NodeState] = field(default_factory=set)
    comment: str | None = None
    reason: str | None = None


@dataclass
class SlurmJob:
    """A Slurm job; start_time is in Unix seconds and time_limit in minutes."""

    job_id: int
    job_state: set[JobState] = field(default_factory=set)
    nodes: str = ""
    start_time: int | None = None
    time_limit: int | None = None
    time_limit_infinite: bool = False


@dataclass
class UpdateNodeRequest:
    """Changes to apply to a node; fields left as None are not changed."""

    state: list[NodeState] | None = None
    comment: str | None = None
    reason: str | None = None


class SlurmError(Exception):
    """A request to Slurm failed; the message is the HTTP status text when known."""

    @classmethod
    def from_status(cls, status: HTTPStatus) -> SlurmError:
        return cls(status.phrase)


NodeHook = Callable[[str], None]
ListHook = Callable[[], None]
UpdateHook = Callable[[str, UpdateNodeRequest], None]


class InMemorySlurmClient:
    """Holds Slurm nodes and jobs in memory.

    Records are copied on the way in and out. Each optional hook runs before
    its operation and may raise to simulate a failing server.
    """

    def __init__(
        self,
        nodes: Iterable[SlurmNode] = (),
        jobs: Iterable[SlurmJob] = (),
        *,
        on_get: NodeHook | None = None,
        on_list: ListHook | None = None,
        on_update: UpdateHook | None = None,
    ) -> None:
        self._nodes: dict[str, SlurmNode] = {n.name: copy.deepcopy(n) for n in nodes}
        self._jobs: list[SlurmJob] = [copy.deepcopy(j) for j in jobs]
        self._on_get = on_get
        self._on_list = on_list
        self._on_update = on_update

    def get_node(self, name: str) -> SlurmNode:
        """Return a copy of the named node, or raise SlurmError (Not Found)."""
        if self._on_get is not None:
            self._on_get(name)
        try:
            return copy.deepcopy(self._nodes[name])
        except KeyError:
            raise SlurmError.from_status(HTTPStatus.NOT_FOUND) from None

    def list_nodes(self) -> list[SlurmNode]:
        """Return copies of all nodes in insertion order."""
        if self._on_list is not None:
            self._on_list()
        return [copy.deepcopy(n) for n in self._nodes.values()]

    def list_jobs(self) -> list[SlurmJob]:
        """Return copies of all jobs in insertion order."""
        if self._on_list is not None:
            self._on_list()
        return [copy.deepcopy(j) for j in self._jobs]

    def update_node(self, name: str, request: UpdateNodeRequest) -> None:
        """Apply request to the named node; UNDRAIN clears DRAIN, other states are added."""
        if self._on_update is not None:
            self._on_update(name, request)
        node = self._nodes.get(name)
        if node is None:
            raise SlurmError.from_status(HTTPStatus.NOT_FOUND)
        for state in request.state or ():
            if state == NodeState.UNDRAIN:
                node.state.discard(NodeState.DRAIN)
            else:
                node.state.add(NodeState(state))
        if request.comment is not None:
            node.comment = request.comment
        if request.reason is not None:
            node.reason = request.reason


@dataclass(frozen=True)
class PodInfo:
    """The Kubernetes pod backing a Slurm node, stored in the node's comment."""

    namespace: str = ""
    pod_name: str = ""

    def to_string(self) -> str:
        return json.dumps(
            {"namespace": self.namespace, "podName": self.pod_name},
            separators=(",", ":"),
        )

    @classmethod
    def parse(cls, text: str | None) -> PodInfo:
        """Parse a string made by to_string; raise ValueError if it is not one."""
        if text is None:
            raise ValueError("no pod info to parse")
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"pod info is not an object: {text!r}")
        namespace = data.get("namespace", "")
        pod_name = data.get("podName", "")
        if not isinstance(namespace, str) or not isinstance(pod_name, str):
            raise ValueError(f"pod info fields must be strings: {text!r}")
        return cls(namespace=namespace, pod_name=pod_name)


class TimeStore:
    """Keeps, for each key, the greatest (or least) time pushed for it."""

    def __init__(self, prefer_greater: bool = True) -> None:
        self._prefer_greater = prefer_greater
        self._times: dict[str, datetime] = {}

    def push(self, key: str, value: datetime) -> None:
        current = self._times.get(key)
        if current is None:
            self._times[key] = value
        elif self._prefer_greater and value > current:
            self._times[key] = value
        elif not self._prefer_greater and value < current:
            self._times[key] = value

    def peek(self, key: str) -> datetime | None:
        """Return the kept time for key, or None if nothing was pushed."""
        return self._times.get(key)

    def keys(self) -> list[str]:
        return list(self._times)

    def __contains__(self, key: object) -> bool:
        return key in self._times

    def __len__(self) -> int:
        return len(self._times)


ClusterKey = tuple[str, str]


class Clusters:
    """Slurm clients keyed by (namespace, cluster name)."""

    def __init__(self) -> None:
        self._clients: dict[ClusterKey, InMemorySlurmClient] = {}

    def add(self, key: ClusterKey, client: InMemorySlurmClient) -> None:
        self._clients[key] = client

    def get(self, key: ClusterKey) -> InMemorySlurmClient | None:
        return self._clients.get(key)

    def remove(self, key: ClusterKey) -> bool:
        """Drop the client for key; return whether one was present."""
        return self._clients.pop(key, None) is not None


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    start = 0
    for pos, char in enumerate(text):
        if char == "[":
            depth += 1
            if depth > 1:
                raise ValueError(f"nested brackets in hostlist: {text!r}")
        elif char == "]":
            depth -= 1
            if depth < 0:
                raise ValueError(f"unbalanced brackets in hostlist: {text!r}")
        elif char == "," and depth == 0:
            parts.append(text[start:pos])
            start = pos + 1
    if depth != 0:
        raise ValueError(f"unbalanced brackets in hostlist: {text!r}")
    parts.append(text[start:])
    return parts


def _expand_range_body(body: str) -> list[str]:
    values: list[str] = []
    for part in body.split(","):
        part = part.strip()
        if "-" in part:
            lo, hi = part.split("-", 1)
            if not (lo.isdigit() and hi.isdigit()):
                raise ValueError(f"invalid range in hostlist: {part!r}")
            start, end = int(lo), int(hi)
            if start > end:
                raise ValueError(f"descending range in hostlist: {part!r}")
            values.extend(str(n).zfill(len(lo)) for n in range(start, end + 1))
        elif part.isdigit():
            values.append(part)
        else:
            raise ValueError(f"invalid value in hostlist: {part!r}")
    return values


def _expand_expression(expr: str) -> list[str]:
    open_pos = expr.find("[")
    if open_pos < 0:
        return [expr]
    close_pos = expr.index("]", open_pos)
    prefix = expr[:open_pos]
    values = _expand_range_body(expr[open_pos + 1 : close_pos])
    tails = _expand_expression(expr[close_pos + 1 :])
    return [prefix + value + tail for value in values for tail in tails]


def expand_hostlist(hostlist: str) -> list[str]:
    """Expand a Slurm hostlist such as "node-[1-3,7]" into host names, in order."""
    if not hostlist.strip():
        return []
    hosts: list[str] = []
    for expr in _split_top_level(hostlist):
        expr = expr.strip()
        if not expr:
            raise ValueError(f"empty host in hostlist: {hostlist!r}")
        hosts.extend(_expand_expression(expr))
    return hosts


_TRAILING_NUMBER_RE = re.compile(r"(.*?)(\d+)")


def _format_ranges(numbers: list[int], width: int) -> list[str]:
    ranges: list[str] = []
    run_start = prev = numbers[0]
    for n in [*numbers[1:], None]:
        if n is not None and n == prev + 1:
            prev = n
            continue
        if run_start == prev:
            ranges.append(str(run_start).zfill(width))
        else:
            ranges.append(f"{str(run_start).zfill(width)}-{str(prev).zfill(width)}")
        if n is not None:
            run_start = prev = n
    return ranges


def compress_hostlist(names: Iterable[str]) -> str:
    """Compress host names into a Slurm hostlist; expanding it yields the same hosts."""
    groups: dict[tuple[str, int | None], set[int] | None] = {}
    for name in names:
        match = _TRAILING_NUMBER_RE.fullmatch(name)
        if match is None or any(c in match.group(1) for c in "[],"):
            groups.setdefault((name, None), None)
            continue
        prefix, digits = match.groups()
        width = len(digits) if len(digits) > 1 and digits[0] == "0" else 0
        numbers = groups.setdefault((prefix, width), set())
        numbers.add(int(digits))

    pieces: list[str] = []
    for (prefix, width), numbers in groups.items():
        if numbers is None or width is None:
            pieces.append(prefix)
            continue
        ranges = _format_ranges(sorted(numbers), width)
        if len(ranges) == 1 and "-" not in ranges[0]:
            pieces.append(prefix + ranges[0])
        else:
            pieces.append(f"{prefix}[{','.join(ranges)}]")
    return ",".join(pieces)