"""Identity, naming and storage helpers for NodeSet pods."""

from __future__ import annotations

import copy
import re

from .model import (
    ANNOTATION_POD_CORDON,
    LABEL_NODESET_POD_INDEX,
    LABEL_NODESET_POD_NAME,
    LABEL_REVISION_HASH,
    NODESET_GVK,
    NodeSet,
    PersistentVolumeClaim,
    Pod,
    Toleration,
    Volume,
    new_controller_ref,
)

_NODESET_POD_RE = re.compile(r"(.*)-([0-9]+)\Z")
_INT32_MAX = 2**31 - 1

_TRUE_STRINGS = {"1", "t", "T", "TRUE", "true", "True"}

_EXISTS = "Exists"
_NO_EXECUTE = "NoExecute"
_NO_SCHEDULE = "NoSchedule"
_DAEMON_TOLERATIONS = (
    ("node.kubernetes.io/not-ready", _NO_EXECUTE),
    ("node.kubernetes.io/unreachable", _NO_EXECUTE),
    ("node.kubernetes.io/disk-pressure", _NO_SCHEDULE),
    ("node.kubernetes.io/memory-pressure", _NO_SCHEDULE),
    ("node.kubernetes.io/pid-pressure", _NO_SCHEDULE),
    ("node.kubernetes.io/unschedulable", _NO_SCHEDULE),
)
_NETWORK_UNAVAILABLE = "node.kubernetes.io/network-unavailable"


def new_nodeset_pod(nodeset: NodeSet, ordinal: int, revision_hash: str = "") -> Pod:
    """Return a new pod built from the nodeset's template with the identity of ``ordinal``."""
    pod = copy.deepcopy(nodeset.template)
    pod.uid = ""
    pod.namespace = nodeset.namespace
    pod.owner_references = [new_controller_ref(nodeset, NODESET_GVK)]
    pod.creation_timestamp = None
    pod.deletion_timestamp = None
    pod.phase = ""
    pod.conditions = []
    pod.name = get_pod_name(nodeset, ordinal)
    _init_identity(nodeset, pod)
    update_storage(nodeset, pod)

    if revision_hash:
        pod.labels[LABEL_REVISION_HASH] = revision_hash

    # Leaving the node unset keeps the scheduler, and so priority classes, in play.
    pod.node_name = ""
    _add_daemon_tolerations(pod)
    return pod


def _init_identity(nodeset: NodeSet, pod: Pod) -> None:
    update_identity(nodeset, pod)
    if pod.hostname:
        pod.hostname = f"{pod.hostname}{get_ordinal(pod)}"
    else:
        pod.hostname = pod.name
    pod.subdomain = nodeset.service_name


def _add_toleration(pod: Pod, toleration: Toleration) -> None:
    for index, existing in enumerate(pod.tolerations):
        if (
            existing.key == toleration.key
            and existing.effect == toleration.effect
            and existing.operator == toleration.operator
            and existing.value == toleration.value
        ):
            if existing != toleration:
                pod.tolerations[index] = toleration
            return
    pod.tolerations.append(toleration)


def _add_daemon_tolerations(pod: Pod) -> None:
    for key, effect in _DAEMON_TOLERATIONS:
        _add_toleration(pod, Toleration(key=key, operator=_EXISTS, effect=effect))
    if pod.host_network:
        _add_toleration(
            pod, Toleration(key=_NETWORK_UNAVAILABLE, operator=_EXISTS, effect=_NO_SCHEDULE)
        )


def update_identity(nodeset: NodeSet, pod: Pod) -> None:
    """Set the pod's name, namespace and identity labels to match the nodeset."""
    ordinal = get_ordinal(pod)
    pod.name = get_pod_name(nodeset, ordinal)
    pod.namespace = nodeset.namespace
    pod.labels[LABEL_NODESET_POD_NAME] = pod.name
    pod.labels[LABEL_NODESET_POD_INDEX] = str(ordinal)


def update_storage(nodeset: NodeSet, pod: Pod) -> None:
    """Point the pod's claim volumes at the nodeset's claims, keeping other volumes."""
    claims = get_persistent_volume_claims(nodeset, pod)
    volumes = [
        Volume(name=template_name, claim_name=claim.name, read_only=False)
        for template_name, claim in claims.items()
    ]
    volumes.extend(volume for volume in pod.volumes if volume.name not in claims)
    pod.volumes = volumes


def is_pod_from_nodeset(nodeset: NodeSet, pod: Pod) -> bool:
    try:
        return re.match(f"^{nodeset.name}-", pod.name) is not None
    except re.error:
        return False


def get_parent_name(pod: Pod) -> str:
    return get_parent_name_and_ordinal(pod)[0]


def get_ordinal(pod: Pod) -> int:
    """Return the pod's ordinal, or -1 if it has none."""
    return get_parent_name_and_ordinal(pod)[1]


def get_parent_name_and_ordinal(pod: Pod) -> tuple[str, int]:
    """Split a pod name into its parent NodeSet name and ordinal; ("", -1) if it has none."""
    match = _NODESET_POD_RE.search(pod.name)
    if match is None:
        return "", -1
    value = int(match.group(2))
    return match.group(1), value if value <= _INT32_MAX else -1


def get_pod_name(nodeset: NodeSet, ordinal: int) -> str:
    return f"{nodeset.name}-{ordinal}"


def get_node_name(pod: Pod) -> str:
    """Return the Slurm node name of a pod: its hostname, else its name."""
    return pod.hostname or pod.name


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
    """True if the pod's volumes cover all of the nodeset's claims."""
    ordinal = get_ordinal(pod)
    if ordinal < 0:
        return False
    volumes = {volume.name: volume for volume in pod.volumes}
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
        claim = copy.deepcopy(template)
        claim.name = get_persistent_volume_claim_name(nodeset, template, ordinal)
        claim.namespace = nodeset.namespace
        claim.labels.update(nodeset.selector or {})
        claims[template.name] = claim
    return claims


def get_persistent_volume_claim_name(
    nodeset: NodeSet, claim: PersistentVolumeClaim, ordinal: int
) -> str:
    return f"{claim.name}-{nodeset.name}-{ordinal}"


def is_pod_cordon(pod: Pod) -> bool:
    """True if the pod carries a true cordon annotation."""
    return pod.annotations.get(ANNOTATION_POD_CORDON, "") in _TRUE_STRINGS