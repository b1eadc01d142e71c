from datetime import datetime, timezone

import pytest

from nodesetctl.client import (
    AlreadyExistsError,
    ApiError,
    ConflictError,
    EventRecorder,
    InMemoryClient,
    NotFoundError,
)
from nodesetctl.models import (
    LABEL_NODESET_POD_NAME,
    NAMESPACE_DEFAULT,
    Container,
    NodeSet,
    OwnerReference,
    PersistentVolumeClaim,
    Pod,
    PodSpec,
    PodTemplate,
    RetentionPolicy,
    RetentionPolicyType,
    Volume,
)
from nodesetctl.podcontrol import PodControl
from nodesetctl.utils import new_nodeset_pod

RETAIN = RetentionPolicyType.RETAIN
DELETE = RetentionPolicyType.DELETE


def new_pvc(name):
    return PersistentVolumeClaim(
        namespace=NAMESPACE_DEFAULT, name=name, resources={"storage": "1"}
    )


def new_nodeset(replicas, name="foo"):
    mounts = {"datadir": "/tmp/zookeeper", "home": "/home"}
    template = PodTemplate(
        labels={"foo": "bar"},
        spec=PodSpec(
            containers=[Container(name="nginx", image="nginx", volume_mounts=mounts)],
            volumes=[Volume(name="home", host_path="/tmp/home")],
        ),
    )
    return NodeSet(
        name=name,
        namespace=NAMESPACE_DEFAULT,
        uid="test",
        selector={"foo": "bar"},
        replicas=replicas,
        template=template,
        volume_claim_templates=[new_pvc("datadir")],
        service_name="governingsvc",
        retention_policy=RetentionPolicy(when_scaled=RETAIN, when_deleted=RETAIN),
        revision_history_limit=2,
    )


def failing(exc):
    def hook(*_args):
        raise exc

    return hook


# --- create_nodeset_pod ---


def test_create_invalid_pod_raises():
    nodeset = new_nodeset(2)
    recorder = EventRecorder()
    control = PodControl(InMemoryClient(), recorder)
    with pytest.raises(ApiError):
        control.create_nodeset_pod(nodeset, Pod())
    assert recorder.events[-1].reason == "FailedCreate"


def test_create_valid_pod():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient()
    recorder = EventRecorder()
    PodControl(client, recorder).create_nodeset_pod(nodeset, pod.copy())
    assert client.get(Pod, NAMESPACE_DEFAULT, "foo-0").name == "foo-0"
    assert client.get(PersistentVolumeClaim, NAMESPACE_DEFAULT, "datadir-foo-0").name == (
        "datadir-foo-0"
    )
    assert [e.reason for e in recorder.events] == ["SuccessfulCreate", "SuccessfulCreate"]
    assert recorder.events[0].message == (
        "create Claim datadir-foo-0 Pod foo-0 in NodeSet foo successful"
    )
    assert recorder.events[-1].message == "create Pod foo-0 in NodeSet foo successful"


def test_create_duplicate_pod_raises_already_exists():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    recorder = EventRecorder()
    control = PodControl(InMemoryClient(pod.copy()), recorder)
    with pytest.raises(AlreadyExistsError):
        control.create_nodeset_pod(nodeset, pod.copy())
    assert all("Pod foo-0 in NodeSet foo" not in e.message or "Claim" in e.message
               for e in recorder.events)


# --- delete_nodeset_pod ---


def test_delete_nonexistent_pod_raises():
    nodeset = new_nodeset(2)
    recorder = EventRecorder()
    with pytest.raises(NotFoundError):
        PodControl(InMemoryClient(), recorder).delete_nodeset_pod(nodeset, Pod())
    assert recorder.events[-1].reason == "FailedDelete"


def test_delete_existing_pod():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(pod.copy())
    recorder = EventRecorder()
    PodControl(client, recorder).delete_nodeset_pod(nodeset, pod.copy())
    with pytest.raises(NotFoundError):
        client.get(Pod, NAMESPACE_DEFAULT, "foo-0")
    assert recorder.events[-1].reason == "SuccessfulDelete"
    assert recorder.events[-1].message == "delete Pod foo-0 in NodeSet foo successful"


# --- update_nodeset_pod ---


def test_update_consistent_pod_does_nothing():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(pod.copy(), new_pvc("datadir-foo-0"))
    recorder = EventRecorder()
    PodControl(client, recorder).update_nodeset_pod(nodeset, pod.copy())
    assert recorder.events == []


def test_update_inconsistent_identity():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(pod.copy())
    recorder = EventRecorder()
    to_update = pod.copy()
    to_update.namespace = "default-2"
    PodControl(client, recorder).update_nodeset_pod(nodeset, to_update)
    assert to_update.namespace == NAMESPACE_DEFAULT
    assert recorder.events[-1].reason == "SuccessfulUpdate"


def test_update_inconsistent_storage():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(pod.copy(), new_pvc("datadir-foo-0"))
    recorder = EventRecorder()
    to_update = pod.copy()
    to_update.spec.volumes = []
    PodControl(client, recorder).update_nodeset_pod(nodeset, to_update)
    stored = client.get(Pod, NAMESPACE_DEFAULT, "foo-0")
    assert [(v.name, v.claim_name) for v in stored.spec.volumes] == [
        ("datadir", "datadir-foo-0")
    ]
    assert recorder.events[-1].reason == "SuccessfulUpdate"


def test_update_retries_on_conflict():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    calls = []

    def on_update(obj):
        calls.append(obj.name)
        if len(calls) == 1:
            raise ConflictError("conflict")

    stored = pod.copy()
    del stored.labels[LABEL_NODESET_POD_NAME]
    client = InMemoryClient(stored, on_update=on_update)
    recorder = EventRecorder()
    to_update = stored.copy()
    PodControl(client, recorder).update_nodeset_pod(nodeset, to_update)
    assert calls == ["foo-0", "foo-0"]
    assert recorder.events[-1].reason == "SuccessfulUpdate"


def test_update_gives_up_after_repeated_conflicts():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    calls = []

    def on_update(obj):
        calls.append(obj.name)
        raise ConflictError("conflict")

    stored = pod.copy()
    del stored.labels[LABEL_NODESET_POD_NAME]
    client = InMemoryClient(stored, on_update=on_update)
    recorder = EventRecorder()
    with pytest.raises(ConflictError):
        PodControl(client, recorder).update_nodeset_pod(nodeset, stored.copy())
    assert len(calls) == 4
    assert recorder.events[-1].reason == "FailedUpdate"


# --- pod_pvcs_match_retention_policy ---


def test_pvcs_match_when_claim_missing():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(nodeset.copy(), pod.copy())
    control = PodControl(client, EventRecorder())
    assert control.pod_pvcs_match_retention_policy(nodeset.copy(), pod.copy()) is True


def test_pvcs_match_when_claim_found():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(nodeset.copy(), pod.copy(), new_pvc("datadir-foo-0"))
    control = PodControl(client, EventRecorder())
    assert control.pod_pvcs_match_retention_policy(nodeset.copy(), pod.copy()) is True


def test_pvcs_match_get_error():
    nodeset = new_nodeset(2)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(
        nodeset.copy(), pod.copy(), new_pvc("datadir-foo-0"),
        on_get=failing(ApiError("abort")),
    )
    control = PodControl(client, EventRecorder())
    with pytest.raises(ApiError, match="could not retrieve claim datadir-foo-0 for foo-0"):
        control.pod_pvcs_match_retention_policy(nodeset.copy(), pod.copy())


def test_pvcs_mismatch_with_delete_policy():
    nodeset = new_nodeset(1)
    nodeset.retention_policy = RetentionPolicy(when_deleted=DELETE, when_scaled=RETAIN)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(new_pvc("datadir-foo-0"))
    control = PodControl(client, EventRecorder())
    assert control.pod_pvcs_match_retention_policy(nodeset, pod) is False


# --- update_pod_pvcs_for_retention_policy ---


def test_update_pvcs_not_found_is_ok():
    nodeset = new_nodeset(1)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(nodeset.copy(), pod.copy())
    recorder = EventRecorder()
    PodControl(client, recorder).update_pod_pvcs_for_retention_policy(nodeset, pod)
    with pytest.raises(NotFoundError):
        client.get(PersistentVolumeClaim, NAMESPACE_DEFAULT, "datadir-foo-0")
    assert recorder.events == []


def test_update_pvcs_get_error():
    nodeset = new_nodeset(1)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(nodeset.copy(), pod.copy(), on_get=failing(ApiError("abort")))
    control = PodControl(client, EventRecorder())
    with pytest.raises(ApiError, match="could not retrieve claim datadir-foo-0"):
        control.update_pod_pvcs_for_retention_policy(nodeset, pod)


def test_update_pvcs_adds_nodeset_controller_ref():
    nodeset = new_nodeset(1)
    nodeset.retention_policy = RetentionPolicy(when_deleted=DELETE, when_scaled=RETAIN)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(new_pvc("datadir-foo-0"))
    PodControl(client, EventRecorder()).update_pod_pvcs_for_retention_policy(nodeset, pod)
    claim = client.get(PersistentVolumeClaim, NAMESPACE_DEFAULT, "datadir-foo-0")
    assert [(r.uid, r.controller) for r in claim.owner_references] == [("test", True)]


def test_update_pvcs_warns_about_conflicting_controller():
    nodeset = new_nodeset(1)
    nodeset.retention_policy = RetentionPolicy(when_deleted=DELETE, when_scaled=DELETE)
    pod = new_nodeset_pod(nodeset, 0, "")
    claim = new_pvc("datadir-foo-0")
    claim.owner_references = [
        OwnerReference(api_version="custom/v1", kind="Unknown", name="unknown",
                       uid="xyz", controller=True)
    ]
    client = InMemoryClient(claim)
    recorder = EventRecorder()
    PodControl(client, recorder).update_pod_pvcs_for_retention_policy(nodeset, pod)
    assert [e.reason for e in recorder.events] == ["ConflictingController"]
    stored = client.get(PersistentVolumeClaim, NAMESPACE_DEFAULT, "datadir-foo-0")
    assert [r.uid for r in stored.owner_references] == ["xyz"]


# --- is_pod_pvcs_stale ---

MISSING, EXISTS, STALE, WITH_REF = "missing", "exists", "stale", "with-ref"


@pytest.mark.parametrize(
    "claim_states, skip_pod_uid, expected",
    [
        ([MISSING, MISSING], False, False),
        ([], False, False),
        ([MISSING, EXISTS], False, False),
        ([WITH_REF, WITH_REF], False, False),
        ([STALE, EXISTS], False, True),
        ([STALE, MISSING], False, True),
        ([WITH_REF, STALE], False, True),
        ([WITH_REF], True, True),
    ],
)
def test_is_pod_pvcs_stale(claim_states, skip_pod_uid, expected):
    nodeset = NodeSet(
        name="set",
        namespace=NAMESPACE_DEFAULT,
        retention_policy=RetentionPolicy(when_deleted=RETAIN, when_scaled=DELETE),
        selector={"key": "value"},
    )
    claims = []
    for i, state in enumerate(claim_states):
        nodeset.volume_claim_templates.append(PersistentVolumeClaim(name=f"claim-{i}"))
        claim = PersistentVolumeClaim(name=f"claim-{i}-set-3", namespace=NAMESPACE_DEFAULT)
        if state == MISSING:
            continue
        if state == STALE:
            claim.owner_references = [
                OwnerReference(name="set-3", uid="stale", api_version="v1", kind="Pod")
            ]
        elif state == WITH_REF:
            claim.owner_references = [
                OwnerReference(name="set-3", uid="123", api_version="v1", kind="Pod")
            ]
        claims.append(claim)
    pod = Pod(name="set-3", uid="" if skip_pod_uid else "123")
    client = InMemoryClient(nodeset.copy(), pod.copy(), *claims)
    control = PodControl(client, EventRecorder())
    assert control.is_pod_pvcs_stale(nodeset, pod) is expected


def test_is_pod_pvcs_stale_propagates_errors():
    nodeset = NodeSet(
        name="set",
        namespace=NAMESPACE_DEFAULT,
        retention_policy=RetentionPolicy(when_deleted=RETAIN, when_scaled=DELETE),
        volume_claim_templates=[PersistentVolumeClaim(name="claim-0")],
    )
    client = InMemoryClient(on_get=failing(ApiError("boom")))
    with pytest.raises(ApiError, match="boom"):
        PodControl(client, EventRecorder()).is_pod_pvcs_stale(nodeset, Pod(name="set-3"))


# --- create_persistent_volume_claims ---


def test_create_pvcs_creates_claim():
    nodeset = new_nodeset(1)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(nodeset.copy())
    recorder = EventRecorder()
    PodControl(client, recorder).create_persistent_volume_claims(nodeset, pod)
    claim = client.get(PersistentVolumeClaim, NAMESPACE_DEFAULT, "datadir-foo-0")
    assert claim.labels == {"foo": "bar"}
    assert [e.reason for e in recorder.events] == ["SuccessfulCreate"]


def test_create_pvcs_already_exists():
    nodeset = new_nodeset(1)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(nodeset.copy(), new_pvc("datadir-foo-0"))
    recorder = EventRecorder()
    PodControl(client, recorder).create_persistent_volume_claims(nodeset, pod)
    assert recorder.events == []


def test_create_pvcs_claim_being_deleted():
    nodeset = new_nodeset(1)
    pod = new_nodeset_pod(nodeset, 0, "")
    pvc = new_pvc("datadir-foo-0")
    pvc.deletion_timestamp = datetime.now(timezone.utc)
    pvc.finalizers.append("foo")
    client = InMemoryClient(nodeset.copy(), pvc)
    with pytest.raises(ApiError, match="pvc datadir-foo-0 is being deleted"):
        PodControl(client, EventRecorder()).create_persistent_volume_claims(nodeset, pod)


def test_create_pvcs_get_error():
    nodeset = new_nodeset(1)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(nodeset.copy(), on_get=failing(ApiError("server closed")))
    recorder = EventRecorder()
    with pytest.raises(ApiError, match="failed to retrieve PVC datadir-foo-0"):
        PodControl(client, recorder).create_persistent_volume_claims(nodeset, pod)
    assert recorder.events[-1].reason == "FailedCreate"


def test_create_pvcs_create_error():
    nodeset = new_nodeset(1)
    pod = new_nodeset_pod(nodeset, 0, "")
    client = InMemoryClient(nodeset.copy(), on_create=failing(ApiError("server closed")))
    recorder = EventRecorder()
    with pytest.raises(ApiError, match="failed to create PVC datadir-foo-0"):
        PodControl(client, recorder).create_persistent_volume_claims(nodeset, pod)
    assert recorder.events[-1].message == (
        "create Claim datadir-foo-0 for Pod foo-0 in NodeSet foo failed error: server closed"
    )