"""Keeping Slurm nodes in step with the NodeSet pods that run them."""

from __future__ import annotations

import enum
import http
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Protocol, Sequence

from . import hostlist
from .model import NodeSet, Pod
from .utils import get_node_name

logger = logging.getLogger(__name__)

NODE_REASON_PREFIX = "slurm-operator:"

# The longest duration that can be represented, used for jobs without a time limit.
_INFINITE_DURATION = timedelta(microseconds=(2**63 - 1) // 1000)


class NodeState(str, enum.Enum):
    ALLOCATED = "ALLOCATED"
    DOWN = "DOWN"
    ERROR = "ERROR"
    FUTURE = "FUTURE"
    IDLE = "IDLE"
    MIXED = "MIXED"
    UNKNOWN = "UNKNOWN"
    CLOUD = "CLOUD"
    COMPLETING = "COMPLETING"
    DRAIN = "DRAIN"
    DYNAMIC_FUTURE = "DYNAMIC_FUTURE"
    DYNAMIC_NORM = "DYNAMIC_NORM"
    FAIL = "FAIL"
    INVALID = "INVALID"
    INVALID_REG = "INVALID_REG"
    MAINTENANCE = "MAINTENANCE"
    NOT_RESPONDING = "NOT_RESPONDING"
    PLANNED = "PLANNED"
    POWER_DOWN = "POWER_DOWN"
    POWER_UP = "POWER_UP"
    POWERED_DOWN = "POWERED_DOWN"
    REBOOT_REQUESTED = "REBOOT_REQUESTED"
    RESERVED = "RESERVED"
    RESUME = "RESUME"
    UNDRAIN = "UNDRAIN"


class JobState(str, enum.Enum):
    BOOT_FAIL = "BOOT_FAIL"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    DEADLINE = "DEADLINE"
    FAILED = "FAILED"
    NODE_FAIL = "NODE_FAIL"
    OUT_OF_MEMORY = "OUT_OF_MEMORY"
    PENDING = "PENDING"
    PREEMPTED = "PREEMPTED"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    TIMEOUT = "TIMEOUT"
    COMPLETING = "COMPLETING"


@dataclass
class SlurmNode:
    name: Optional[str] = None
    state: list[NodeState] = field(default_factory=list)
    reason: Optional[str] = None
    comment: Optional[str] = None

    @property
    def states(self) -> frozenset[NodeState]:
        return frozenset(self.state)


@dataclass
class SlurmJob:
    """A Slurm job; ``start_time`` is in epoch seconds, ``time_limit`` in minutes."""

    job_id: Optional[int] = None
    job_state: list[JobState] = field(default_factory=list)
    nodes: Optional[str] = None
    start_time: Optional[int] = None
    time_limit: Optional[int] = None
    time_limit_infinite: bool = False

    @property
    def states(self) -> frozenset[JobState]:
        return frozenset(self.job_state)


@dataclass
class NodeUpdate:
    """A request to change a Slurm node."""

    state: Optional[list[NodeState]] = None
    reason: Optional[str] = None
    comment: Optional[str] = None


@dataclass(frozen=True)
class PodInfo:
    """The pod behind a Slurm node, stored in the node's comment."""

    namespace: str = ""
    pod_name: str = ""

    def to_string(self) -> str:
        return json.dumps({"namespace": self.namespace, "podName": self.pod_name})

    @classmethod
    def parse(cls, text: Optional[str]) -> PodInfo:
        """Read pod info from a node comment; raise ValueError if it holds none."""
        if text is None:
            raise ValueError("no pod info")
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"pod info is not an object: {text!r}")
        return cls(
            namespace=str(data.get("namespace", "")),
            pod_name=str(data.get("podName", "")),
        )


class SlurmClient(Protocol):
    """Access to one Slurm cluster. Failures are raised as exceptions."""

    def get_node(self, name: str) -> SlurmNode: ...

    def list_nodes(self, refresh_cache: bool = False) -> list[SlurmNode]: ...

    def list_jobs(self) -> list[SlurmJob]: ...

    def update_node(self, node: SlurmNode, update: NodeUpdate) -> None: ...


@dataclass
class SlurmNodeStatus:
    total: int = 0

    allocated: int = 0
    down: int = 0
    error: int = 0
    future: int = 0
    idle: int = 0
    mixed: int = 0
    unknown: int = 0

    completing: int = 0
    drain: int = 0
    fail: int = 0
    invalid: int = 0
    invalid_reg: int = 0
    maintenance: int = 0
    not_responding: int = 0
    undrain: int = 0


# Base states in order of precedence; a node counts towards the first it has.
_BASE_STATES = (
    (NodeState.ALLOCATED, "allocated"),
    (NodeState.DOWN, "down"),
    (NodeState.ERROR, "error"),
    (NodeState.FUTURE, "future"),
    (NodeState.IDLE, "idle"),
    (NodeState.MIXED, "mixed"),
    (NodeState.UNKNOWN, "unknown"),
)

_FLAG_STATES = (
    (NodeState.COMPLETING, "completing"),
    (NodeState.DRAIN, "drain"),
    (NodeState.FAIL, "fail"),
    (NodeState.INVALID, "invalid"),
    (NodeState.INVALID_REG, "invalid_reg"),
    (NodeState.MAINTENANCE, "maintenance"),
    (NodeState.NOT_RESPONDING, "not_responding"),
    (NodeState.UNDRAIN, "undrain"),
)

_TOLERATED_MESSAGES = frozenset(
    {http.HTTPStatus.NOT_FOUND.phrase, http.HTTPStatus.NO_CONTENT.phrase}
)


def tolerate_error(err: Optional[BaseException]) -> bool:
    """True for no error, and for errors that only say the node is absent."""
    if err is None:
        return True
    return str(err) in _TOLERATED_MESSAGES


class SlurmControl:
    """Operations on the Slurm nodes of a NodeSet.

    ``clusters`` maps ``(namespace, cluster name)`` to a :class:`SlurmClient`.
    When a NodeSet's cluster has no client, operations do nothing.
    """

    def __init__(self, clusters: Mapping[tuple[str, str], SlurmClient]):
        self.clusters = clusters

    def _lookup_client(self, nodeset: NodeSet) -> Optional[SlurmClient]:
        return self.clusters.get((nodeset.namespace, nodeset.cluster_name))

    def _get_node(self, client: SlurmClient, pod: Pod) -> Optional[SlurmNode]:
        """Fetch the pod's node; None when the error is tolerated."""
        try:
            return client.get_node(get_node_name(pod))
        except Exception as err:
            if tolerate_error(err):
                return None
            raise

    @staticmethod
    def _update_node(client: SlurmClient, node: SlurmNode, update: NodeUpdate) -> None:
        try:
            client.update_node(node, update)
        except Exception as err:
            if not tolerate_error(err):
                raise

    def get_node_names(self, nodeset: NodeSet, pods: Sequence[Pod]) -> list[str]:
        """Return the names of registered Slurm nodes that belong to the pods."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return []
        wanted = {get_node_name(pod) for pod in pods}
        return [
            node.name or ""
            for node in client.list_nodes()
            if (node.name or "") in wanted
        ]

    def update_node_with_pod_info(self, nodeset: NodeSet, pod: Pod) -> None:
        """Record the pod's namespace and name in its Slurm node's comment."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return
        node = self._get_node(client, pod)
        if node is None:
            return

        pod_info = PodInfo(namespace=pod.namespace, pod_name=pod.name)
        try:
            old_info = PodInfo.parse(node.comment)
        except ValueError:
            old_info = PodInfo()
        if old_info == pod_info:
            logger.debug("Node %s already contains podInfo, skipping update", node.name)
            return

        logger.info("Update Slurm Node %s with Kubernetes Pod info %s", node.name, pod_info)
        self._update_node(client, node, NodeUpdate(comment=pod_info.to_string()))

    def make_node_drain(self, nodeset: NodeSet, pod: Pod, reason: str) -> None:
        """Add the DRAIN state to the pod's Slurm node."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return
        node = self._get_node(client, pod)
        if node is None:
            return
        logger.debug("make slurm node %s drain", node.name)
        update = NodeUpdate(state=[NodeState.DRAIN], reason=f"{NODE_REASON_PREFIX} {reason}")
        self._update_node(client, node, update)

    def make_node_undrain(self, nodeset: NodeSet, pod: Pod, reason: str) -> None:
        """Remove the DRAIN state, unless something other than this operator drained it."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return
        node = self._get_node(client, pod)
        if node is None:
            return

        node_reason = node.reason or ""
        states = node.states
        if NodeState.DRAIN not in states or NodeState.UNDRAIN in states:
            logger.debug("Node %s is already undrained, skipping undrain request", node.name)
            return
        if node_reason and NODE_REASON_PREFIX not in node_reason:
            logger.info(
                "Node %s was drained but not by slurm-operator, skipping undrain request: %s",
                node.name,
                node_reason,
            )
            return

        logger.debug("make slurm node %s undrain", node.name)
        update = NodeUpdate(state=[NodeState.UNDRAIN], reason=f"{NODE_REASON_PREFIX} {reason}")
        self._update_node(client, node, update)

    def is_node_drain(self, nodeset: NodeSet, pod: Pod) -> bool:
        """True if the node has the DRAIN state, or cannot be found."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return True
        node = self._get_node(client, pod)
        if node is None:
            return True
        return NodeState.DRAIN in node.states

    def is_node_drained(self, nodeset: NodeSet, pod: Pod) -> bool:
        """True if the node is IDLE or DOWN and DRAIN, or cannot be found."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return True
        node = self._get_node(client, pod)
        if node is None:
            return True
        states = node.states
        base = NodeState.IDLE in states or NodeState.DOWN in states
        return base and NodeState.DRAIN in states

    def calculate_node_status(self, nodeset: NodeSet, pods: Sequence[Pod]) -> SlurmNodeStatus:
        """Count the pods' registered Slurm nodes by base and flag state."""
        status = SlurmNodeStatus()
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return status
        try:
            nodes = client.list_nodes(refresh_cache=True)
        except Exception as err:
            if tolerate_error(err):
                return status
            raise

        wanted = {get_node_name(pod) for pod in pods}
        for node in nodes:
            if (node.name or "") not in wanted:
                continue
            status.total += 1
            states = node.states
            for state, attr in _BASE_STATES:
                if state in states:
                    setattr(status, attr, getattr(status, attr) + 1)
                    break
            for state, attr in _FLAG_STATES:
                if state in states:
                    setattr(status, attr, getattr(status, attr) + 1)
        return status

    def get_node_deadlines(self, nodeset: NodeSet, pods: Sequence[Pod]) -> dict[str, datetime]:
        """Map each node running a job on the pods' nodes to its latest job end time."""
        deadlines: dict[str, datetime] = {}
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return deadlines

        wanted = {get_node_name(pod) for pod in pods}
        for job in client.list_jobs():
            if JobState.RUNNING not in job.states:
                continue
            try:
                node_names = hostlist.expand(job.nodes or "")
            except ValueError:
                logger.error("failed to expand hostlist of job %s", job.job_id or 0)
                raise
            if wanted.isdisjoint(node_names):
                continue

            start = datetime.fromtimestamp(job.start_time or 0, tz=timezone.utc)
            limit = (
                _INFINITE_DURATION
                if job.time_limit_infinite
                else timedelta(minutes=job.time_limit or 0)
            )
            deadline = start + limit
            for name in node_names:
                current = deadlines.get(name)
                if current is None or deadline > current:
                    deadlines[name] = deadline
        return deadlines