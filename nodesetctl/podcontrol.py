"""Creation, deletion and update of NodeSet pods and their claims."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from .client import (
    AlreadyExistsError,
    ApiError,
    ConflictError,
    EventRecorder,
    InMemoryClient,
    NotFoundError,
)
from .models import (
    EVENT_NORMAL,
    EVENT_WARNING,
    POD_GVK,
    NodeSet,
    PersistentVolumeClaim,
    Pod,
    RetentionPolicyType,
)
from .ownerrefs import (
    get_retention_policy,
    has_stale_owner_ref,
    has_unexpected_controller,
    is_claim_owner_up_to_date,
    update_claim_owner_ref_for_set_and_pod,
)
from .utils import (
    get_ordinal,
    get_persistent_volume_claim_name,
    get_persistent_volume_claims,
    is_identity_match,
    is_storage_match,
    update_identity,
    update_storage,
)

logger = logging.getLogger(__name__)

EVENT_CREATE = "Create"
EVENT_DELETE = "Delete"
EVENT_UPDATE = "Update"

_BACKOFF_STEPS = 4
_BACKOFF_DURATION = 0.010
_BACKOFF_FACTOR = 5.0
_BACKOFF_JITTER = 0.1

R = TypeVar("R")


def _retry_on_conflict(fn: Callable[[], R]) -> R:
    """Call fn, retrying with exponential backoff while it raises ConflictError."""
    delay = _BACKOFF_DURATION
    for step in range(_BACKOFF_STEPS):
        try:
            return fn()
        except ConflictError:
            if step == _BACKOFF_STEPS - 1:
                raise
            time.sleep(delay * (1 + random.random() * _BACKOFF_JITTER))
            delay *= _BACKOFF_FACTOR
    raise AssertionError("unreachable")


def _aggregate(errors: list[str]) -> ApiError:
    if len(errors) == 1:
        return ApiError(errors[0])
    return ApiError("[" + ", ".join(errors) + "]")


class PodControl:
    """Manages NodeSet pods and keeps their claims consistent with the NodeSet."""

    def __init__(self, client: InMemoryClient, recorder: EventRecorder) -> None:
        self._client = client
        self._recorder = recorder

    def create_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Create the pod's claims, then the pod, then apply the retention policy."""
        try:
            self.create_persistent_volume_claims(nodeset, pod)
        except ApiError as err:
            self._record_pod_event(EVENT_CREATE, nodeset, pod, err)
            raise

        create_err: ApiError | None = None
        try:
            self._client.create(pod)
        except AlreadyExistsError:
            raise
        except ApiError as err:
            create_err = err

        try:
            self.update_pod_pvcs_for_retention_policy(nodeset, pod)
        except ApiError as err:
            self._record_pod_event(EVENT_UPDATE, nodeset, pod, err)
            raise

        self._record_pod_event(EVENT_CREATE, nodeset, pod, create_err)
        if create_err is not None:
            raise create_err

    def delete_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Delete the pod and record the outcome."""
        try:
            self._client.delete(Pod, pod.namespace, pod.name)
        except ApiError as err:
            self._record_pod_event(EVENT_DELETE, nodeset, pod, err)
            raise
        self._record_pod_event(EVENT_DELETE, nodeset, pod, None)

    def update_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Bring the pod's identity, storage and claims in line with the NodeSet."""
        current = pod
        attempted_update = False

        def attempt() -> None:
            nonlocal current, attempted_update
            consistent = True
            if not is_identity_match(nodeset, current):
                update_identity(nodeset, current)
                consistent = False
            if not is_storage_match(nodeset, current):
                update_storage(nodeset, current)
                consistent = False
                try:
                    self.create_persistent_volume_claims(nodeset, current)
                except ApiError as err:
                    self._record_pod_event(EVENT_UPDATE, nodeset, current, err)
                    raise
            try:
                match = self.pod_pvcs_match_retention_policy(nodeset, current)
            except ApiError as err:
                self._record_pod_event(EVENT_UPDATE, nodeset, current, err)
                raise
            if not match:
                try:
                    self.update_pod_pvcs_for_retention_policy(nodeset, current)
                except ApiError as err:
                    self._record_pod_event(EVENT_UPDATE, nodeset, current, err)
                    raise
                consistent = False

            if consistent:
                return

            attempted_update = True
            try:
                self._client.update(current)
            except ApiError:
                try:
                    current = self._client.get(Pod, nodeset.namespace, current.name)
                except ApiError as get_err:
                    logger.error(
                        "error getting updated Pod %s/%s: %s",
                        nodeset.namespace,
                        current.name,
                        get_err,
                    )
                raise

        try:
            _retry_on_conflict(attempt)
        except ApiError as err:
            if attempted_update:
                self._record_pod_event(EVENT_UPDATE, nodeset, current, err)
            raise
        if attempted_update:
            self._record_pod_event(EVENT_UPDATE, nodeset, current, None)

    def pod_pvcs_match_retention_policy(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Return False if any existing claim of the pod disagrees with the retention policy."""
        ordinal = get_ordinal(pod)
        for template in nodeset.volume_claim_templates:
            claim_name = get_persistent_volume_claim_name(nodeset, template, ordinal)
            try:
                claim = self._client.get(PersistentVolumeClaim, nodeset.namespace, claim_name)
            except NotFoundError:
                logger.debug(
                    "Expected claim %s missing, continuing to pick up in next iteration",
                    claim_name,
                )
                continue
            except ApiError as err:
                raise ApiError(
                    f"could not retrieve claim {claim_name} for {pod.name} "
                    "when checking PVC deletion policy"
                ) from err
            if not is_claim_owner_up_to_date(claim, nodeset, pod):
                return False
        return True

    def update_pod_pvcs_for_retention_policy(self, nodeset: NodeSet, pod: Pod) -> None:
        """Rewrite the owner references of the pod's existing claims to follow the policy."""
        ordinal = get_ordinal(pod)
        for template in nodeset.volume_claim_templates:
            claim_name = get_persistent_volume_claim_name(nodeset, template, ordinal)
            try:
                claim = self._client.get(PersistentVolumeClaim, nodeset.namespace, claim_name)
            except NotFoundError:
                logger.debug(
                    "Expected claim %s missing, continuing to pick up in next iteration",
                    claim_name,
                )
                continue
            except ApiError as err:
                raise ApiError(
                    f"could not retrieve claim {claim_name} not found for {pod.name} "
                    f"when checking PVC deletion policy: {err}"
                ) from err

            if has_unexpected_controller(claim, nodeset, pod):
                message = (
                    f"PersistentVolumeClaim {claim_name} has a conflicting OwnerReference "
                    "that acts as a managing controller, the retention policy is ignored "
                    "for this claim"
                )
                self._recorder.event(nodeset, EVENT_WARNING, "ConflictingController", message)
            if not is_claim_owner_up_to_date(claim, nodeset, pod):
                update_claim_owner_ref_for_set_and_pod(claim, nodeset, pod)
                try:
                    self._client.update(claim)
                except ApiError as err:
                    raise ApiError(
                        f"could not update claim {claim_name} for delete policy ownerRefs: {err}"
                    ) from err

    def is_pod_pvcs_stale(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Return True if a claim of the pod refers to an older pod of the same name."""
        policy = get_retention_policy(nodeset)
        if policy.when_scaled == RetentionPolicyType.RETAIN:
            return False
        for claim in get_persistent_volume_claims(nodeset, pod).values():
            try:
                existing = self._client.get(PersistentVolumeClaim, claim.namespace, claim.name)
            except NotFoundError:
                continue
            if has_stale_owner_ref(existing, pod, POD_GVK):
                return True
        return False

    def create_persistent_volume_claims(self, nodeset: NodeSet, pod: Pod) -> None:
        """Create every claim the pod needs; raise one error describing all failures."""
        errors: list[str] = []
        for claim in get_persistent_volume_claims(nodeset, pod).values():
            try:
                existing = self._client.get(PersistentVolumeClaim, nodeset.namespace, claim.name)
            except NotFoundError:
                try:
                    self._client.create(claim)
                except AlreadyExistsError as err:
                    errors.append(f"failed to create PVC {claim.name}: {err}")
                except ApiError as err:
                    errors.append(f"failed to create PVC {claim.name}: {err}")
                    self._record_claim_event(EVENT_CREATE, nodeset, pod, claim, err)
                else:
                    self._record_claim_event(EVENT_CREATE, nodeset, pod, claim, None)
            except ApiError as err:
                errors.append(f"failed to retrieve PVC {claim.name}: {err}")
                self._record_claim_event(EVENT_CREATE, nodeset, pod, claim, err)
            else:
                if existing.deletion_timestamp is not None:
                    errors.append(f"pvc {claim.name} is being deleted")
        if errors:
            raise _aggregate(errors)

    def _record_pod_event(
        self, verb: str, nodeset: NodeSet, pod: Pod, err: Exception | None
    ) -> None:
        if err is None:
            reason = f"Successful{verb.title()}"
            message = f"{verb.lower()} Pod {pod.name} in NodeSet {nodeset.name} successful"
            self._recorder.event(nodeset, EVENT_NORMAL, reason, message)
        else:
            reason = f"Failed{verb.title()}"
            message = (
                f"{verb.lower()} Pod {pod.name} in NodeSet {nodeset.name} failed error: {err}"
            )
            self._recorder.event(nodeset, EVENT_WARNING, reason, message)

    def _record_claim_event(
        self,
        verb: str,
        nodeset: NodeSet,
        pod: Pod,
        claim: PersistentVolumeClaim,
        err: Exception | None,
    ) -> None:
        if err is None:
            reason = f"Successful{verb.title()}"
            message = (
                f"{verb.lower()} Claim {claim.name} Pod {pod.name} "
                f"in NodeSet {nodeset.name} successful"
            )
            self._recorder.event(nodeset, EVENT_NORMAL, reason, message)
        else:
            reason = f"Failed{verb.title()}"
            message = (
                f"{verb.lower()} Claim {claim.name} for Pod {pod.name} "
                f"in NodeSet {nodeset.name} failed error: {err}"
            )
            self._recorder.event(nodeset, EVENT_WARNING, reason, message)