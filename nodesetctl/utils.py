"""Identity, naming and storage helpers for NodeSet pods."""

from __future__ import annotations

import copy
import re

from .models import (
    ANNOTATION_POD_CORDON,
    CONDITION_READY,
    CONDITION_TRUE,
    LABEL_NODESET_POD_INDEX,
    LABEL_NODESET_POD_NAME,
    NODESET_GVK,
    POD_RUNNING,
    REVISION_LABEL,
    NodeSet,
    PersistentVolumeClaim,
    Pod,
    PodSpec,
    Toleration,
    Volume,
    new_controller_ref,
)

_POD_NAME_RE = re.compile(r"(.*)-([0-9]+)\Z")
_MAX_INT32 = 2**31 - 1

_TRUE_STRINGS = frozenset({"1", "t", "T", "TRUE", "true", "True"})

_DAEMON_TOLERATIONS = (
    Toleration(key="node.kubernetes.io/not-ready", operator="Exists", effect="NoExecute"),
    Toleration(key="node.kubernetes.io/unreachable", operator="Exists", effect="NoExecute"),
    Toleration(key="node.kubernetes.io/disk-pressure", operator="Exists", effect="NoSchedule"),
    Toleration(key="node.kubernetes.io/memory-pressure", operator="Exists", effect="NoSchedule"),
    Toleration(key="node.kubernetes.io/pid-pressure", operator="Exists", effect="NoSchedule"),
    Toleration(key="node.kubernetes.io/unschedulable", operator="Exists", effect="NoSchedule"),
)
_HOST_NETWORK_TOLERATION = Toleration(
    key="node.kubernetes.io/network-unavailable", operator="Exists", effect="NoSchedule"
)


def _add_or_update_toleration(spec: PodSpec, toleration: Toleration) -> None:
    for i, old in enumerate(spec.tolerations):
        if old == toleration:
            return
        if old.key == toleration.key and old.effect == toleration.effect:
            spec.tolerations[i] = copy.copy(toleration)
            return
    spec.tolerations.append(copy.copy(toleration))


def _add_daemon_tolerations(spec: PodSpec) -> None:
    for toleration in _DAEMON_TOLERATIONS:
        _add_or_update_toleration(spec, toleration)
    if spec.host_network:
        _add_or_update_toleration(spec, _HOST_NETWORK_TOLERATION)


def new_nodeset_pod(nodeset: NodeSet, ordinal: int, revision_hash: str = "") -> Pod:
    """Return a new Pod built from the NodeSet template with the identity of ordinal."""
    template = nodeset.template
    pod = Pod(
        labels=dict(template.labels),
        annotations=dict(template.annotations),
        owner_references=[new_controller_ref(nodeset, NODESET_GVK)],
        spec=copy.deepcopy(template.spec),
    )
    pod.name = get_pod_name(nodeset, ordinal)
    _init_identity(nodeset, pod)
    update_storage(nodeset, pod)

    if revision_hash:
        pod.labels[REVISION_LABEL] = revision_hash

    # Leave scheduling to the scheduler so priority classes are honoured.
    pod.spec.node_name = ""
    _add_daemon_tolerations(pod.spec)
    return pod


def _init_identity(nodeset: NodeSet, pod: Pod) -> None:
    update_identity(nodeset, pod)
    if pod.spec.hostname:
        pod.spec.hostname = f"{pod.spec.hostname}{get_ordinal(pod)}"
    else:
        pod.spec.hostname = pod.name
    pod.spec.subdomain = nodeset.service_name


def update_identity(nodeset: NodeSet, pod: Pod) -> None:
    """Make the pod's name, namespace and identity labels conform to the NodeSet."""
    ordinal = get_ordinal(pod)
    pod.name = get_pod_name(nodeset, ordinal)
    pod.namespace = nodeset.namespace
    pod.labels[LABEL_NODESET_POD_NAME] = pod.name
    pod.labels[LABEL_NODESET_POD_INDEX] = str(ordinal)


def update_storage(nodeset: NodeSet, pod: Pod) -> None:
    """Replace the pod's claim volumes with those required by the NodeSet templates."""
    claims = get_persistent_volume_claims(nodeset, pod)
    new_volumes = [
        Volume(name=name, claim_name=claim.name, read_only=False)
        for name, claim in claims.items()
    ]
    new_volumes.extend(v for v in pod.spec.volumes if v.name not in claims)
    pod.spec.volumes = new_volumes


def is_pod_from_nodeset(nodeset: NodeSet, pod: Pod) -> bool:
    """Return True if the pod's name starts with the NodeSet's name and a dash."""
    try:
        return re.match(f"^{nodeset.name}-", pod.name) is not None
    except re.error:
        return False


def get_parent_name(pod: Pod) -> str:
    return get_parent_name_and_ordinal(pod)[0]


def get_ordinal(pod: Pod) -> int:
    return get_parent_name_and_ordinal(pod)[1]


def get_parent_name_and_ordinal(pod: Pod) -> tuple[str, int]:
    """Split a pod name into its parent NodeSet name and ordinal.

    A name that does not end in a dash and digits yields ("", -1); an ordinal
    that does not fit in 32 bits yields -1.
    """
    match = _POD_NAME_RE.search(pod.name)
    if match is None:
        return "", -1
    parent, digits = match.groups()
    ordinal = int(digits)
    if ordinal > _MAX_INT32:
        ordinal = -1
    return parent, ordinal


def get_pod_name(nodeset: NodeSet, ordinal: int) -> str:
    return f"{nodeset.name}-{ordinal}"


def get_node_name(pod: Pod) -> str:
    """Return the Slurm node name of the pod: its hostname, else its name."""
    return pod.spec.hostname or pod.name


def is_identity_match(nodeset: NodeSet, pod: Pod) -> bool:
    parent, ordinal = get_parent_name_and_ordinal(pod)
    return (
        ordinal >= 0
        and nodeset.name == parent
        and pod.name == get_pod_name(nodeset, ordinal)
        and pod.namespace == nodeset.namespace
        and pod.labels.get(LABEL_NODESET_POD_NAME, "") == pod.name
    )


def is_storage_match(nodeset: NodeSet, pod: Pod) -> bool:
    """Return True if the pod's volumes cover every claim template of the NodeSet."""
    ordinal = get_ordinal(pod)
    if ordinal < 0:
        return False
    volumes = {volume.name: volume for volume in pod.spec.volumes}
    for claim in nodeset.volume_claim_templates:
        volume = volumes.get(claim.name)
        if (
            volume is None
            or volume.claim_name is None
            or volume.claim_name != get_persistent_volume_claim_name(nodeset, claim, ordinal)
        ):
            return False
    return True


def get_persistent_volume_claims(
    nodeset: NodeSet, pod: Pod
) -> dict[str, PersistentVolumeClaim]:
    """Map each claim template name to the claim the pod should use."""
    ordinal = get_ordinal(pod)
    claims: dict[str, PersistentVolumeClaim] = {}
    for template in nodeset.volume_claim_templates:
        claim = template.copy()
        claim.name = get_persistent_volume_claim_name(nodeset, claim, ordinal)
        claim.namespace = nodeset.namespace
        claim.labels.update(nodeset.selector)
        claims[template.name] = claim
    return claims


def get_persistent_volume_claim_name(
    nodeset: NodeSet, claim: PersistentVolumeClaim, ordinal: int
) -> str:
    return f"{claim.name}-{nodeset.name}-{ordinal}"


def is_pod_ready(pod: Pod) -> bool:
    return any(
        c.type == CONDITION_READY and c.status == CONDITION_TRUE
        for c in pod.status.conditions
    )


def is_pod_cordon(pod: Pod) -> bool:
    """Return True if the pod carries a true cordon annotation."""
    return pod.annotations.get(ANNOTATION_POD_CORDON, "") in _TRUE_STRINGS


def is_healthy(pod: Pod) -> bool:
    """Return True for a running, ready pod that is not being deleted."""
    return (
        pod.deletion_timestamp is None
        and pod.status.phase == POD_RUNNING
        and is_pod_ready(pod)
    )