"""Kubernetes-style objects used by the NodeSet controller."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

NAMESPACE_DEFAULT = "default"

NODESET_API_GROUP = "slinky.slurm.net"
NODESET_API_VERSION = "v1alpha1"
NODESET_KIND = "NodeSet"

ANNOTATION_POD_DELETION_COST = "controller.kubernetes.io/pod-deletion-cost"
ANNOTATION_POD_DEADLINE = f"{NODESET_API_GROUP}/pod-deadline"
ANNOTATION_POD_CORDON = f"{NODESET_API_GROUP}/pod-cordon"

LABEL_NODESET_POD_NAME = f"{NODESET_API_GROUP}/nodeset-pod-name"
LABEL_NODESET_POD_INDEX = f"{NODESET_API_GROUP}/nodeset-pod-index"
LABEL_REVISION_HASH = "controller-revision-hash"

PHASE_PENDING = "Pending"
PHASE_RUNNING = "Running"
PHASE_SUCCEEDED = "Succeeded"
PHASE_FAILED = "Failed"
PHASE_UNKNOWN = "Unknown"

CONDITION_READY = "Ready"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"


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
NODESET_GVK = GroupVersionKind(NODESET_API_GROUP, NODESET_API_VERSION, NODESET_KIND)


@dataclass
class OwnerReference:
    """A reference from a dependent object to its owner."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = None


@dataclass
class PodCondition:
    type: str = ""
    status: str = ""
    last_transition_time: Optional[datetime] = None


@dataclass
class Toleration:
    key: str = ""
    operator: str = ""
    value: str = ""
    effect: str = ""
    toleration_seconds: Optional[int] = None


@dataclass
class Volume:
    """A pod volume; ``claim_name`` is set for volumes backed by a claim."""

    name: str = ""
    claim_name: Optional[str] = None
    read_only: bool = False
    host_path: Optional[str] = None


@dataclass(kw_only=True)
class _ObjectMeta:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None


@dataclass(kw_only=True)
class Pod(_ObjectMeta):
    """A pod: metadata, the parts of its spec in use, and its status."""

    node_name: str = ""
    hostname: str = ""
    subdomain: str = ""
    host_network: bool = False
    containers: list[Any] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    tolerations: list[Toleration] = field(default_factory=list)
    phase: str = ""
    conditions: list[PodCondition] = field(default_factory=list)

    def is_ready(self) -> bool:
        """True when the pod's Ready condition has status True."""
        for condition in self.conditions:
            if condition.type == CONDITION_READY:
                return condition.status == CONDITION_TRUE
        return False


@dataclass(kw_only=True)
class PersistentVolumeClaim(_ObjectMeta):
    spec: dict[str, Any] = field(default_factory=dict)


class RetentionPolicyType(str, enum.Enum):
    RETAIN = "Retain"
    DELETE = "Delete"


@dataclass
class RetentionPolicy:
    """What happens to a NodeSet's claims when it is deleted or scaled down."""

    when_deleted: RetentionPolicyType = RetentionPolicyType.RETAIN
    when_scaled: RetentionPolicyType = RetentionPolicyType.RETAIN


@dataclass(kw_only=True)
class NodeSet(_ObjectMeta):
    cluster_name: str = ""
    service_name: str = ""
    replicas: Optional[int] = None
    selector: Optional[dict[str, str]] = None
    template: Pod = field(default_factory=Pod)
    volume_claim_templates: list[PersistentVolumeClaim] = field(default_factory=list)
    persistent_volume_claim_retention_policy: Optional[RetentionPolicy] = None
    revision_history_limit: Optional[int] = None
    update_strategy: str = "RollingUpdate"


def new_controller_ref(owner: _ObjectMeta, gvk: GroupVersionKind) -> OwnerReference:
    """Build a controlling owner reference to ``owner``."""
    return OwnerReference(
        api_version=gvk.api_version(),
        kind=gvk.kind,
        name=owner.name,
        uid=owner.uid,
        controller=True,
        block_owner_deletion=True,
    )