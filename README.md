# nodesetctl

Control logic for NodeSets: groups of identical pods that each back one
Slurm compute node. The package is a library with these parts:

- **Object model** (`nodesetctl.models`): dataclasses for `NodeSet`,
  `Pod`, `PersistentVolumeClaim`, `OwnerReference`, `RetentionPolicy` and
  their parts, plus `new_controller_ref`.
- **Pod identity and storage** (`nodesetctl.utils`): build pods from a
  NodeSet template (`new_nodeset_pod`), derive pod names and ordinals
  (`get_pod_name`, `get_parent_name_and_ordinal`, `get_node_name`), check
  and fix identity and volumes (`is_identity_match`, `update_identity`,
  `is_storage_match`, `update_storage`), and work out the claims each pod
  needs (`get_persistent_volume_claims`).
- **Pod ordering** (`nodesetctl.sorting`): `sort_active_pods` and
  `split_active_pods` rank pods for scale-down, putting unassigned,
  pending, unready, low deletion-cost, early-deadline, cordoned and
  high-ordinal pods first. `split_unhealthy_pods` separates unhealthy
  pods from healthy ones, oldest first.
- **Owner references** (`nodesetctl.ownerrefs`): decide whether a claim's
  owner references follow the NodeSet's retention policy
  (`is_claim_owner_up_to_date`) and rewrite them when they do not
  (`update_claim_owner_ref_for_set_and_pod`).
- **Pod and claim control** (`nodesetctl.podcontrol`): `PodControl`
  creates, updates and deletes NodeSet pods, creates their claims, keeps
  claim owner references in line with the retention policy, and records
  an event for each outcome.
- **Slurm records** (`nodesetctl.slurm`): `SlurmNode`, `SlurmJob`,
  `NodeState`, `JobState`, `PodInfo`, `TimeStore`, `Clusters`, and
  `expand_hostlist` / `compress_hostlist` for hostlists such as
  `node-[1-3,7]`.
- **Slurm node control** (`nodesetctl.slurmcontrol`): `SlurmControl`
  drains and undrains nodes, stores pod info in node comments, counts
  node states (`calculate_node_status`), and works out per-node deadlines
  from running jobs (`get_node_deadlines`).

Errors are raised as exceptions: `nodesetctl.client.ApiError` and its
subclasses `NotFoundError`, `AlreadyExistsError` and `ConflictError` for
the object store, `nodesetctl.slurm.SlurmError` for Slurm. Slurm errors
whose message is "Not Found" or "No Content" are tolerated
(`tolerate_error`).

## Install

```
pip install .
```

## Example

```python
from nodesetctl.client import EventRecorder, InMemoryClient
from nodesetctl.models import NodeSet
from nodesetctl.podcontrol import PodControl
from nodesetctl.utils import new_nodeset_pod

nodeset = NodeSet(name="compute", namespace="default", cluster_name="slurm")
pod = new_nodeset_pod(nodeset, 0, "")

recorder = EventRecorder()
control = PodControl(InMemoryClient(), recorder)
control.create_nodeset_pod(nodeset, pod)
print(recorder.events[-1].reason)  # SuccessfulCreate
```

Slurm side:

```python
from nodesetctl.slurm import Clusters, InMemorySlurmClient, NodeState, SlurmNode
from nodesetctl.slurmcontrol import SlurmControl

clusters = Clusters()
clusters.add(
    ("default", "slurm"),
    InMemorySlurmClient(nodes=[SlurmNode(name="compute-0", state={NodeState.IDLE})]),
)
slurm = SlurmControl(clusters)
slurm.make_node_drain(nodeset, pod, "scaling down")
print(slurm.is_node_drained(nodeset, pod))  # True
```

A Slurm client is looked up by the NodeSet's `(namespace, cluster_name)`;
when none is registered, the Slurm operations do nothing and report the
node as drained.

## What it does not do

The package holds decision and bookkeeping logic only. It has no
command-line tool, runs no reconciliation loop, and does not talk to a
real cluster API server or Slurm REST service: the only clients it has
are `InMemoryClient` and `InMemorySlurmClient`, which keep objects in
memory. To drive a live cluster, pass an object with the same methods
(`get`, `create`, `update`, `delete`; `get_node`, `list_nodes`,
`list_jobs`, `update_node`).

## Tests

```
pip install .[test]
pytest
```