"""Owner references between NodeSets, their pods and their volume claims.

The retention policy of a NodeSet decides which of the NodeSet and the pod
own (and so garbage-collect) a pod's persistent volume claims:

- Retain on scaling and on deletion: no owner reference.
- Retain on scaling, delete on deletion: the NodeSet only.
- Delete on scaling, retain on deletion: the pod only, once it is cordoned.
- Delete on both: the pod when cordoned, otherwise the NodeSet.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Protocol

from .model import (
    NODESET_GVK,
    POD_GVK,
    GroupVersionKind,
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

_RETAIN = RetentionPolicyType.RETAIN
_DELETE = RetentionPolicyType.DELETE

# (when_deleted, when_scaled) pairs the controller knows how to handle.
_KNOWN_POLICIES = [
    (_RETAIN, _RETAIN),
    (_DELETE, _RETAIN),
    (_RETAIN, _DELETE),
    (_DELETE, _DELETE),
]


class _Identified(Protocol):
    name: str
    uid: str


class _Owned(Protocol):
    owner_references: list[OwnerReference]


def get_retention_policy(nodeset: NodeSet) -> RetentionPolicy:
    """Return a copy of the nodeset's claim retention policy; Retain/Retain if unset."""
    policy = nodeset.persistent_volume_claim_retention_policy
    if policy is None:
        return RetentionPolicy(when_deleted=_RETAIN, when_scaled=_RETAIN)
    return RetentionPolicy(when_deleted=policy.when_deleted, when_scaled=policy.when_scaled)


def _policy_key(nodeset: NodeSet) -> tuple[RetentionPolicyType, RetentionPolicyType]:
    policy = get_retention_policy(nodeset)
    key = (policy.when_deleted, policy.when_scaled)
    if key not in _KNOWN_POLICIES:
        logger.error(
            "Unknown policy, treating as Retain: %r",
            nodeset.persistent_volume_claim_retention_policy,
        )
        return (_RETAIN, _RETAIN)
    return key


def has_owner_ref(target: _Owned, owner: _Identified) -> bool:
    """True if ``target`` holds a reference to ``owner``'s UID, controller or not."""
    return any(ref.uid == owner.uid for ref in target.owner_references)


def matches_ref(ref: OwnerReference, obj: _Identified, gvk: GroupVersionKind) -> bool:
    """True if the reference names ``obj`` with the given type, whatever its UID."""
    return ref.api_version == gvk.api_version() and ref.kind == gvk.kind and ref.name == obj.name


def has_stale_owner_ref(target: _Owned, obj: _Identified, gvk: GroupVersionKind) -> bool:
    """True if the first reference matching ``obj`` carries a different UID."""
    for ref in target.owner_references:
        if matches_ref(ref, obj, gvk):
            return ref.uid != obj.uid
    return False


def add_controller_ref(
    refs: Iterable[OwnerReference], owner: _Identified, gvk: GroupVersionKind
) -> list[OwnerReference]:
    """Return ``refs`` with a controller reference to ``owner`` added if missing."""
    refs = list(refs)
    if any(ref.uid == owner.uid for ref in refs):
        return refs
    return [*refs, new_controller_ref(owner, gvk)]


def remove_refs(
    refs: Iterable[OwnerReference], predicate: Callable[[OwnerReference], bool]
) -> list[OwnerReference]:
    """Return the references for which ``predicate`` is false."""
    return [ref for ref in refs if not predicate(ref)]


def has_unexpected_controller(
    claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod
) -> bool:
    """True if a retention policy is in force and something else controls the claim.

    A reference to the nodeset or pod by name whose UID differs counts as
    unexpected, since it means the claim was orphaned.
    """
    policy = get_retention_policy(nodeset)
    if policy.when_scaled == _RETAIN and policy.when_deleted == _RETAIN:
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
        if ref.controller:
            return True
    return False


def has_non_controller_owner(claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod) -> bool:
    """True if the nodeset or pod owns the claim without being its controller."""
    return any(
        (ref.uid == nodeset.uid or ref.uid == pod.uid) and not ref.controller
        for ref in claim.owner_references
    )


def is_claim_owner_up_to_date(claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod) -> bool:
    """False if the claim's owners disagree with the nodeset's retention policy.

    Claims with stale references, or with another controller and no reference
    to the nodeset or pod, are reported as up to date so they are left alone.
    """
    if has_stale_owner_ref(claim, nodeset, NODESET_GVK) or has_stale_owner_ref(
        claim, pod, POD_GVK
    ):
        return True

    set_ref = has_owner_ref(claim, nodeset)
    pod_ref = has_owner_ref(claim, pod)

    if has_unexpected_controller(claim, nodeset, pod):
        return not (set_ref or pod_ref)

    if has_non_controller_owner(claim, nodeset, pod):
        return False

    when_deleted, when_scaled = _policy_key(nodeset)
    if when_deleted == _RETAIN and when_scaled == _RETAIN:
        return not (set_ref or pod_ref)
    if when_deleted == _DELETE and when_scaled == _RETAIN:
        return set_ref and not pod_ref
    scaled_down = is_pod_cordon(pod)
    if when_deleted == _RETAIN:
        return not set_ref and scaled_down == pod_ref
    # Delete on both: a scaled-down pod owns the claim, otherwise the nodeset does.
    return scaled_down != set_ref and scaled_down == pod_ref


def update_claim_owner_ref_for_set_and_pod(
    claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod
) -> None:
    """Rewrite the claim's references to the nodeset and pod to follow the policy."""
    unexpected = has_unexpected_controller(claim, nodeset, pod)
    refs = remove_refs(
        claim.owner_references,
        lambda ref: matches_ref(ref, nodeset, NODESET_GVK) or matches_ref(ref, pod, POD_GVK),
    )
    if unexpected:
        claim.owner_references = refs
        return

    when_deleted, when_scaled = _policy_key(nodeset)
    if when_scaled == _RETAIN and when_deleted == _DELETE:
        refs = add_controller_ref(refs, nodeset, NODESET_GVK)
    elif when_scaled == _DELETE:
        if is_pod_cordon(pod):
            refs = add_controller_ref(refs, pod, POD_GVK)
        elif when_deleted == _DELETE:
            refs = add_controller_ref(refs, nodeset, NODESET_GVK)
    claim.owner_references = refs