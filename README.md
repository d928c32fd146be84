# slinkynodes

`slinkynodes` manages a *NodeSet*. A NodeSet is a group of Kubernetes pods,
and each pod runs one Slurm compute node. The package holds the decision
logic: how pods are named and built, which pods to remove first, who owns
their volume claims, and how the matching Slurm nodes are drained and
counted.

You supply the connection to Kubernetes and to Slurm through two small
interfaces, `KubeClient` and `SlurmClient`. The package has no dependencies
outside the standard library and needs Python 3.10 or later.

## Modules

### `slinkynodes.model`

This module holds the data classes the rest of the package works on:

- `Pod`
- `PersistentVolumeClaim`
- `NodeSet`
- `Volume`
- `Toleration`
- `PodCondition`
- `OwnerReference`
- `GroupVersionKind`
- `RetentionPolicy` and `RetentionPolicyType`

It also provides the following:

- `Pod.is_ready()` is true when the pod's `Ready` condition is `True`.
- `GroupVersionKind.api_version()` gives strings such as `v1` or
  `slinky.slurm.net/v1alpha1`.
- `new_controller_ref(owner, gvk)` builds a controlling `OwnerReference`.

### `slinkynodes.utils`

This module handles pod identity and storage.

- `new_nodeset_pod(nodeset, ordinal, revision_hash)` builds the pod for an
  ordinal from the NodeSet's template. It does the following:
  - sets the pod's name, namespace, hostname, subdomain and identity labels
  - adds a controller reference to the NodeSet
  - points the claim volumes at the NodeSet's claims
  - adds the standard daemon tolerations
  - sets the revision label when a hash is given
- `get_pod_name`, `get_node_name` and `get_persistent_volume_claim_name`
  derive names.
- `get_parent_name_and_ordinal`, `get_parent_name` and `get_ordinal` parse a
  pod name of the form `<nodeset>-<n>`. A pod name that does not have this
  form gives `("", -1)`.
- `is_identity_match` and `update_identity` check and repair a pod's
  identity.
- `is_storage_match` and `update_storage` check and repair a pod's volumes.
- `get_persistent_volume_claims` maps template names to the pod's claims.
- `is_pod_from_nodeset` tells whether a pod belongs to a NodeSet.
- `is_pod_cordon` tells whether a pod is cordoned, using the cordon
  annotation.

### `slinkynodes.sort`

`sort_active_pods(pods)` returns the pods ordered so that the best candidates
for deletion come first. It compares pods by these criteria, in this order:

1. unscheduled before scheduled
2. phase: Pending, then Unknown, then Running
3. not ready before ready
4. lower deletion cost, from the `controller.kubernetes.io/pod-deletion-cost` annotation
5. earlier deadline annotation
6. cordoned first
7. higher ordinal first
8. more recently ready first
9. newer creation time first

Other functions in this module:

- `active_pods_less(pod1, pod2)` is the underlying comparison.
- `split_active_pods(pods, partition)` sorts the pods and cuts the list at the
  partition, which is clamped to the list bounds.
- `after_or_zero(t1, t2)` compares two times. A `None` time counts as after
  any other time.

### `slinkynodes.ownerrefs`

This module keeps claim owner references in line with the NodeSet's
`RetentionPolicy`. If no policy is set, it uses Retain for both cases.

| When scaled | When deleted | Claim owned by |
|-------------|--------------|----------------|
| Retain | Retain | nobody |
| Retain | Delete | the NodeSet |
| Delete | Retain | the pod, once it is cordoned |
| Delete | Delete | the pod if it is cordoned, otherwise the NodeSet |

The main functions are `is_claim_owner_up_to_date` and
`update_claim_owner_ref_for_set_and_pod`. Helpers are also available:

- `get_retention_policy`
- `has_owner_ref`
- `has_stale_owner_ref`
- `matches_ref`
- `add_controller_ref`
- `remove_refs`
- `has_unexpected_controller`
- `has_non_controller_owner`

A claim that has a stale reference is left alone. So is a claim controlled by
something else with no reference to the NodeSet or the pod.

### `slinkynodes.podcontrol`

`PodControl(client, recorder)` works through a `KubeClient`. The client must
provide `get(kind, namespace, name)`, `create(obj)`, `update(obj)` and
`delete(kind, namespace, name)`. It must raise `NotFoundError`,
`AlreadyExistsError` or `ConflictError` as appropriate.

`PodControl` has these methods:

- `create_nodeset_pod` creates the pod's missing claims first, then creates
  the pod, then sets the owners of its claims.
- `delete_nodeset_pod` deletes the pod.
- `update_nodeset_pod` repairs the pod's identity, storage and claim owners,
  then updates it. It retries a few times when an update meets a conflict.
- `pod_pvcs_match_retention_policy` checks the pod's existing claims against
  the policy.
- `update_pod_pvcs_for_retention_policy` rewrites the owners of the pod's
  existing claims to follow the policy.
- `is_pod_pvcs_stale` is true when a claim refers to an earlier pod of the
  same name. This only applies when the policy deletes claims on scale-down.
- `create_persistent_volume_claims` creates the missing claims. It raises one
  `AggregateError` that lists every failure. A claim that is being deleted
  also counts as a failure.

Each outcome is recorded as an `Event` on an `EventRecorder`. The recorder
keeps events in its `events` list and also logs them.

### `slinkynodes.slurmcontrol`

`SlurmControl(clusters)` takes a mapping from `(namespace, cluster_name)` to
a `SlurmClient`. If a NodeSet's cluster has no client, the operations do
nothing. The checks then report the node as drained.

`SlurmControl` has these methods:

- `make_node_drain` and `make_node_undrain` add and remove the DRAIN state.
  The reason is prefixed with `slurm-operator:`. A node drained for some
  other reason is not undrained.
- `is_node_drain` and `is_node_drained` check the node. "Drained" means IDLE
  or DOWN, together with DRAIN.
- `update_node_with_pod_info` stores the pod's namespace and name in the
  node's comment, as JSON (`PodInfo`). It skips the update when the comment
  already holds them.
- `calculate_node_status` counts the pods' nodes by base state and by flag
  state, into a `SlurmNodeStatus`.
- `get_node_names` lists the registered nodes that belong to the pods.
- `get_node_deadlines` maps each node to the latest end time of its running
  jobs. The end time is the start time plus the time limit.

Node errors whose message is `Not Found` or `No Content` are tolerated, as
`tolerate_error` decides. The module also defines `NodeState`, `JobState`,
`SlurmNode`, `SlurmJob` and `NodeUpdate`.

### `slinkynodes.hostlist`

- `expand("node-[0-2,5]")` gives `['node-0', 'node-1', 'node-2', 'node-5']`.
  Zero padding is kept, and a malformed expression raises `ValueError`.
- `compress(names)` groups names by prefix into an expression.

### `slinkynodes.errors`

This module defines the error classes:

- `ApiError`
- `NotFoundError`, `AlreadyExistsError` and `ConflictError`, which are
  subclasses of `ApiError`
- `AggregateError`, which collects several errors

It also has the tests `is_not_found`, `is_already_exists` and `is_conflict`.

## Example

```python
from slinkynodes.model import NodeSet
from slinkynodes.utils import new_nodeset_pod, get_node_name
from slinkynodes.hostlist import expand, compress

nodeset = NodeSet(name="compute", namespace="default")
pod = new_nodeset_pod(nodeset, 3, "")
print(pod.name, get_node_name(pod))         # compute-3 compute-3

print(expand("compute-[0-2]"))              # ['compute-0', 'compute-1', 'compute-2']
print(compress(["compute-0", "compute-1"])) # compute-[0-1]
```

## What it does not do

- It has no reconcile loop and no command to run.
- It does not talk to a Kubernetes API server or to the Slurm REST API
  itself. You provide `KubeClient` and `SlurmClient` implementations.
- It does not include the NodeSet resource definitions or the manifests for
  deploying a controller.

## Installing

```
pip install .
pip install ".[test]"   # with the test requirements
```

Run the tests with `pytest`.