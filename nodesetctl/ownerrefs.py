"""Owner-reference bookkeeping that enforces the claim retention policy."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from .models import (
    NODESET_GVK,
    POD_GVK,
    GroupVersionKind,
    KubeObject,
    NodeSet,
    OwnerReference,
    PersistentVolumeClaim,
    Pod,
    RetentionPolicy,
    RetentionPolicyType,
    new_controller_ref,
)
from .utils import is_pod_cordon

logger = logging.getLogger(__name__)

RETAIN = RetentionPolicyType.RETAIN
DELETE = RetentionPolicyType.DELETE


def get_retention_policy(nodeset: NodeSet) -> RetentionPolicy:
    """Return the NodeSet's claim retention policy, defaulting to retain on both."""
    policy = nodeset.retention_policy
    if policy is None:
        return RetentionPolicy(when_deleted=RETAIN, when_scaled=RETAIN)
    return RetentionPolicy(when_deleted=policy.when_deleted, when_scaled=policy.when_scaled)


def has_owner_ref(target: KubeObject, owner: KubeObject) -> bool:
    """Return True if target has any owner reference with owner's UID."""
    return any(ref.uid == owner.uid for ref in target.owner_references)


def has_stale_owner_ref(target: KubeObject, obj: KubeObject, gvk: GroupVersionKind) -> bool:
    """Return True if the first reference matching obj by name and type has another UID."""
    for ref in target.owner_references:
        if matches_ref(ref, obj, gvk):
            return ref.uid != obj.uid
    return False


def matches_ref(ref: OwnerReference, obj: KubeObject, gvk: GroupVersionKind) -> bool:
    """Return True if ref names obj with the given type, ignoring the UID."""
    return ref.api_version == gvk.api_version() and ref.kind == gvk.kind and ref.name == obj.name


def add_controller_ref(
    refs: Iterable[OwnerReference], owner: KubeObject, gvk: GroupVersionKind
) -> list[OwnerReference]:
    """Return refs with a controller reference to owner appended unless one is present."""
    refs = list(refs)
    if any(ref.uid == owner.uid for ref in refs):
        return refs
    return [*refs, new_controller_ref(owner, gvk)]


def remove_refs(
    refs: Iterable[OwnerReference], predicate: Callable[[OwnerReference], bool]
) -> list[OwnerReference]:
    """Return the references for which predicate is false."""
    return [ref for ref in refs if not predicate(ref)]


def has_unexpected_controller(claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod) -> bool:
    """Return True if a controller other than the NodeSet or pod manages the claim.

    Under a retain-everything policy any controller is acceptable. A reference
    naming the NodeSet or pod but carrying a different UID also counts.
    """
    policy = get_retention_policy(nodeset)
    if policy.when_scaled == RETAIN and policy.when_deleted == RETAIN:
        return False
    for ref in claim.owner_references:
        if matches_ref(ref, nodeset, NODESET_GVK):
            if ref.uid != nodeset.uid:
                return True
            continue
        if matches_ref(ref, pod, POD_GVK):
            if ref.uid != pod.uid:
                return True
            continue
        if ref.is_controller:
            return True
    return False


def has_non_controller_owner(claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod) -> bool:
    """Return True if the pod or NodeSet owns the claim without controlling it."""
    return any(
        ref.uid in (nodeset.uid, pod.uid) and not ref.is_controller
        for ref in claim.owner_references
    )


def _policy_pair(nodeset: NodeSet) -> tuple[RetentionPolicyType, RetentionPolicyType]:
    policy = get_retention_policy(nodeset)
    pair = (policy.when_deleted, policy.when_scaled)
    if pair not in ((RETAIN, RETAIN), (DELETE, RETAIN), (RETAIN, DELETE), (DELETE, DELETE)):
        logger.error("Unknown policy, treating as Retain: %s", nodeset.retention_policy)
        return RETAIN, RETAIN
    return pair


def is_claim_owner_up_to_date(claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod) -> bool:
    """Return False if the claim's owner references disagree with the retention policy.

    Claims with stale references or foreign controllers are left alone and
    reported as up to date, unless our own references must be cleaned up.
    """
    if has_stale_owner_ref(claim, nodeset, NODESET_GVK) or has_stale_owner_ref(claim, pod, POD_GVK):
        return True

    if has_unexpected_controller(claim, nodeset, pod):
        return not (has_owner_ref(claim, nodeset) or has_owner_ref(claim, pod))

    if has_non_controller_owner(claim, nodeset, pod):
        return False

    set_ref = has_owner_ref(claim, nodeset)
    pod_ref = has_owner_ref(claim, pod)
    when_deleted, when_scaled = _policy_pair(nodeset)

    if when_deleted == DELETE and when_scaled == RETAIN:
        return set_ref and not pod_ref
    if when_deleted == RETAIN and when_scaled == DELETE:
        return not set_ref and is_pod_cordon(pod) == pod_ref
    if when_deleted == DELETE and when_scaled == DELETE:
        scaled_down = is_pod_cordon(pod)
        # A scaled-down pod owns its claim; otherwise the NodeSet does.
        return scaled_down != set_ref and scaled_down == pod_ref
    return not (set_ref or pod_ref)


def update_claim_owner_ref_for_set_and_pod(
    claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod
) -> None:
    """Rewrite the claim's references to the NodeSet and pod to follow the policy."""
    unexpected_controller = has_unexpected_controller(claim, nodeset, pod)
    refs = remove_refs(
        claim.owner_references,
        lambda ref: matches_ref(ref, nodeset, NODESET_GVK) or matches_ref(ref, pod, POD_GVK),
    )
    if unexpected_controller:
        claim.owner_references = refs
        return

    when_deleted, when_scaled = _policy_pair(nodeset)
    if when_scaled == RETAIN and when_deleted == DELETE:
        refs = add_controller_ref(refs, nodeset, NODESET_GVK)
    elif when_scaled == DELETE and when_deleted == RETAIN:
        if is_pod_cordon(pod):
            refs = add_controller_ref(refs, pod, POD_GVK)
    elif when_scaled == DELETE and when_deleted == DELETE:
        if is_pod_cordon(pod):
            refs = add_controller_ref(refs, pod, POD_GVK)
        else:
            refs = add_controller_ref(refs, nodeset, NODESET_GVK)
    claim.owner_references = refs