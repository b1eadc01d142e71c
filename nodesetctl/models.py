"""Object model for NodeSets, Pods and PersistentVolumeClaims."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime

NAMESPACE_DEFAULT = "default"

POD_PENDING = "Pending"
POD_RUNNING = "Running"
POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"
POD_UNKNOWN = "Unknown"

CONDITION_READY = "Ready"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

LABEL_NODESET_POD_NAME = "slinky.slurm.net/pod-name"
LABEL_NODESET_POD_INDEX = "slinky.slurm.net/pod-index"
REVISION_LABEL = "controller-revision-hash"

ANNOTATION_POD_CORDON = "slinky.slurm.net/pod-cordon"
ANNOTATION_POD_DELETION_COST = "slinky.slurm.net/pod-deletion-cost"
ANNOTATION_POD_DEADLINE = "slinky.slurm.net/pod-deadline"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


@dataclass(frozen=True)
class GroupVersionKind:
    """Identifies an API type by group, version and kind."""

    group: str
    version: str
    kind: str

    def api_version(self) -> str:
        """Return the apiVersion string, omitting an empty group."""
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"


POD_GVK = GroupVersionKind("", "v1", "Pod")
NODESET_GVK = GroupVersionKind("slinky.slurm.net", "v1alpha1", "NodeSet")


@dataclass
class OwnerReference:
    """A reference from a dependent object to its owner."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: bool | None = None
    block_owner_deletion: bool | None = None

    @property
    def is_controller(self) -> bool:
        return bool(self.controller)


@dataclass(kw_only=True)
class KubeObject:
    """Metadata shared by every stored object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None

    def copy(self):
        """Return a deep copy that shares no mutable state with this object."""
        return copy.deepcopy(self)


@dataclass
class Toleration:
    key: str = ""
    operator: str = "Exists"
    value: str = ""
    effect: str = ""


@dataclass
class Volume:
    """A pod volume, backed either by a claim or by a host path."""

    name: str
    claim_name: str | None = None
    read_only: bool = False
    host_path: str | None = None


@dataclass
class Container:
    name: str
    image: str = ""
    volume_mounts: dict[str, str] = field(default_factory=dict)


@dataclass
class PodSpec:
    node_name: str = ""
    hostname: str = ""
    subdomain: str = ""
    host_network: bool = False
    containers: list[Container] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    tolerations: list[Toleration] = field(default_factory=list)


@dataclass
class PodCondition:
    type: str
    status: str
    last_transition_time: datetime | None = None


@dataclass
class PodStatus:
    phase: str = ""
    conditions: list[PodCondition] = field(default_factory=list)


@dataclass(kw_only=True)
class Pod(KubeObject):
    spec: PodSpec = field(default_factory=PodSpec)
    status: PodStatus = field(default_factory=PodStatus)


@dataclass(kw_only=True)
class PodTemplate:
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    spec: PodSpec = field(default_factory=PodSpec)


@dataclass(kw_only=True)
class PersistentVolumeClaim(KubeObject):
    access_modes: list[str] = field(default_factory=list)
    resources: dict[str, str] = field(default_factory=dict)
    storage_class_name: str | None = None


class RetentionPolicyType(str, enum.Enum):
    RETAIN = "Retain"
    DELETE = "Delete"


@dataclass
class RetentionPolicy:
    """What happens to claims when the NodeSet is deleted or scaled down."""

    when_deleted: RetentionPolicyType = RetentionPolicyType.RETAIN
    when_scaled: RetentionPolicyType = RetentionPolicyType.RETAIN


@dataclass(kw_only=True)
class NodeSet(KubeObject):
    cluster_name: str = ""
    replicas: int | None = None
    selector: dict[str, str] = field(default_factory=dict)
    template: PodTemplate = field(default_factory=PodTemplate)
    volume_claim_templates: list[PersistentVolumeClaim] = field(default_factory=list)
    service_name: str = ""
    retention_policy: RetentionPolicy | None = None
    revision_history_limit: int | None = None


def new_controller_ref(owner: KubeObject, gvk: GroupVersionKind) -> OwnerReference:
    """Build a controlling owner reference pointing at owner."""
    return OwnerReference(
        api_version=gvk.api_version(),
        kind=gvk.kind,
        name=owner.name,
        uid=owner.uid,
        controller=True,
        block_owner_deletion=True,
    )