"""Creating, deleting and updating NodeSet pods together with their volume claims."""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, TypeVar

from .errors import AggregateError, ApiError, NotFoundError, is_already_exists, is_conflict
from .model import POD_GVK, NodeSet, PersistentVolumeClaim, Pod, RetentionPolicyType
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

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

_VERB_CREATE = "Create"
_VERB_DELETE = "Delete"
_VERB_UPDATE = "Update"

# Backoff used when an update hits a conflict: attempts, first delay, growth factor.
_RETRY_STEPS = 4
_RETRY_DELAY = 0.01
_RETRY_FACTOR = 5.0

T = TypeVar("T")


@dataclass(frozen=True)
class Event:
    """An event recorded against an object."""

    kind: str
    namespace: str
    name: str
    event_type: str
    reason: str
    message: str


@dataclass
class EventRecorder:
    """Keeps the events recorded against objects, and logs them."""

    events: list[Event] = field(default_factory=list)

    def record(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        event = Event(
            kind=type(obj).__name__,
            namespace=getattr(obj, "namespace", ""),
            name=getattr(obj, "name", ""),
            event_type=event_type,
            reason=reason,
            message=message,
        )
        self.events.append(event)
        level = logging.WARNING if event_type == EVENT_TYPE_WARNING else logging.INFO
        logger.log(level, "%s %s/%s: %s: %s", event.kind, event.namespace, event.name, reason, message)


class KubeClient(Protocol):
    """The object store the controller reads and writes.

    ``get`` raises :class:`NotFoundError` for a missing object; ``create``
    raises :class:`AlreadyExistsError` for an existing one; ``update`` may
    raise :class:`ConflictError`.
    """

    def get(self, kind: type[T], namespace: str, name: str) -> T: ...

    def create(self, obj: Any) -> None: ...

    def update(self, obj: Any) -> None: ...

    def delete(self, kind: type, namespace: str, name: str) -> None: ...


class PodControl:
    """Manages the pods of a NodeSet and the claims they mount."""

    def __init__(self, client: KubeClient, recorder: EventRecorder):
        self.client = client
        self.recorder = recorder

    def create_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Create the pod's claims, then the pod, then set the claims' owners."""
        try:
            self.create_persistent_volume_claims(nodeset, pod)
        except Exception as err:
            self._record_pod_event(_VERB_CREATE, nodeset, pod, err)
            raise

        create_error: Optional[Exception] = None
        try:
            self.client.create(pod)
        except Exception as err:
            if is_already_exists(err):
                raise
            create_error = err

        try:
            self.update_pod_pvcs_for_retention_policy(nodeset, pod)
        except Exception as err:
            self._record_pod_event(_VERB_UPDATE, nodeset, pod, err)
            raise

        self._record_pod_event(_VERB_CREATE, nodeset, pod, create_error)
        if create_error is not None:
            raise create_error

    def delete_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        error: Optional[Exception] = None
        try:
            self.client.delete(Pod, pod.namespace, pod.name)
        except Exception as err:
            error = err
            raise
        finally:
            self._record_pod_event(_VERB_DELETE, nodeset, pod, error)

    def update_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Bring the pod's identity, storage and claim owners in line, retrying on conflicts."""
        attempted = False
        error: Optional[Exception] = None
        delay = _RETRY_DELAY
        try:
            for step in range(_RETRY_STEPS):
                if step:
                    time.sleep(delay)
                    delay *= _RETRY_FACTOR
                if self._reconcile_pod(nodeset, pod):
                    return
                attempted = True
                try:
                    self.client.update(pod)
                    return
                except Exception as update_error:
                    try:
                        pod = copy.deepcopy(self.client.get(Pod, nodeset.namespace, pod.name))
                    except Exception as get_error:
                        logger.error(
                            "error getting updated Pod %s/%s: %s",
                            nodeset.namespace,
                            pod.name,
                            get_error,
                        )
                    if not is_conflict(update_error) or step == _RETRY_STEPS - 1:
                        raise
        except Exception as err:
            error = err
            raise
        finally:
            if attempted:
                self._record_pod_event(_VERB_UPDATE, nodeset, pod, error)

    def _reconcile_pod(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Fix the pod in place; return True if it was already consistent."""
        consistent = True
        if not is_identity_match(nodeset, pod):
            update_identity(nodeset, pod)
            consistent = False
        if not is_storage_match(nodeset, pod):
            update_storage(nodeset, pod)
            consistent = False
            try:
                self.create_persistent_volume_claims(nodeset, pod)
            except Exception as err:
                self._record_pod_event(_VERB_UPDATE, nodeset, pod, err)
                raise
        try:
            match = self.pod_pvcs_match_retention_policy(nodeset, pod)
            if not match:
                self.update_pod_pvcs_for_retention_policy(nodeset, pod)
                consistent = False
        except Exception as err:
            self._record_pod_event(_VERB_UPDATE, nodeset, pod, err)
            raise
        return consistent

    def pod_pvcs_match_retention_policy(self, nodeset: NodeSet, pod: Pod) -> bool:
        """False if some existing claim of the pod has owners that disagree with the policy."""
        ordinal = get_ordinal(pod)
        for template in nodeset.volume_claim_templates:
            claim_name = get_persistent_volume_claim_name(nodeset, template, ordinal)
            try:
                claim = self.client.get(PersistentVolumeClaim, nodeset.namespace, claim_name)
            except NotFoundError:
                logger.debug("Expected claim %s missing, continuing to pick up in next iteration", claim_name)
                continue
            except Exception as err:
                raise ApiError(
                    f"could not retrieve claim {claim_name} for {pod.name} "
                    "when checking PVC deletion policy"
                ) from err
            if not is_claim_owner_up_to_date(claim, nodeset, pod):
                return False
        return True

    def update_pod_pvcs_for_retention_policy(self, nodeset: NodeSet, pod: Pod) -> None:
        """Rewrite the owners of the pod's existing claims to follow the retention policy."""
        ordinal = get_ordinal(pod)
        for template in nodeset.volume_claim_templates:
            claim_name = get_persistent_volume_claim_name(nodeset, template, ordinal)
            try:
                claim = self.client.get(PersistentVolumeClaim, nodeset.namespace, claim_name)
            except NotFoundError:
                logger.debug("Expected claim %s missing, continuing to pick up in next iteration", claim_name)
                continue
            except Exception as err:
                raise ApiError(
                    f"could not retrieve claim {claim_name} not found for {pod.name} "
                    f"when checking PVC deletion policy: {err}"
                ) from err

            if has_unexpected_controller(claim, nodeset, pod):
                self.recorder.record(
                    nodeset,
                    EVENT_TYPE_WARNING,
                    "ConflictingController",
                    f"PersistentVolumeClaim {claim_name} has a conflicting OwnerReference that "
                    "acts as a manging controller, the retention policy is ignored for this claim",
                )
            if not is_claim_owner_up_to_date(claim, nodeset, pod):
                claim = copy.deepcopy(claim)
                update_claim_owner_ref_for_set_and_pod(claim, nodeset, pod)
                try:
                    self.client.update(claim)
                except Exception as err:
                    raise ApiError(
                        f"could not update claim {claim_name} for delete policy ownerRefs: {err}"
                    ) from err

    def is_pod_pvcs_stale(self, nodeset: NodeSet, pod: Pod) -> bool:
        """True if a claim of the pod refers to an earlier pod of the same name.

        Claims are never stale when the policy retains them on scale-down.
        """
        policy = get_retention_policy(nodeset)
        if policy.when_scaled == RetentionPolicyType.RETAIN:
            return False
        for claim in get_persistent_volume_claims(nodeset, pod).values():
            try:
                existing = self.client.get(PersistentVolumeClaim, claim.namespace, claim.name)
            except NotFoundError:
                continue
            if has_stale_owner_ref(existing, pod, POD_GVK):
                return True
        return False

    def create_persistent_volume_claims(self, nodeset: NodeSet, pod: Pod) -> None:
        """Create any missing claims of the pod; raise AggregateError listing every failure."""
        errors: list[Exception] = []
        for claim in get_persistent_volume_claims(nodeset, pod).values():
            try:
                existing = self.client.get(PersistentVolumeClaim, nodeset.namespace, claim.name)
            except NotFoundError:
                create_error: Optional[Exception] = None
                try:
                    self.client.create(claim)
                except Exception as err:
                    create_error = err
                    errors.append(ApiError(f"failed to create PVC {claim.name}: {err}"))
                if create_error is None or not is_already_exists(create_error):
                    self._record_claim_event(_VERB_CREATE, nodeset, pod, claim, create_error)
            except Exception as err:
                errors.append(ApiError(f"failed to retrieve PVC {claim.name}: {err}"))
                self._record_claim_event(_VERB_CREATE, nodeset, pod, claim, err)
            else:
                if existing.deletion_timestamp is not None:
                    errors.append(ApiError(f"pvc {claim.name} is being deleted"))
        if errors:
            raise AggregateError(errors)

    def _record_pod_event(
        self, verb: str, nodeset: NodeSet, pod: Pod, err: Optional[BaseException]
    ) -> None:
        if err is None:
            self.recorder.record(
                nodeset,
                EVENT_TYPE_NORMAL,
                f"Successful{verb.title()}",
                f"{verb.lower()} Pod {pod.name} in NodeSet {nodeset.name} successful",
            )
        else:
            self.recorder.record(
                nodeset,
                EVENT_TYPE_WARNING,
                f"Failed{verb.title()}",
                f"{verb.lower()} Pod {pod.name} in NodeSet {nodeset.name} failed error: {err}",
            )

    def _record_claim_event(
        self,
        verb: str,
        nodeset: NodeSet,
        pod: Pod,
        claim: PersistentVolumeClaim,
        err: Optional[BaseException],
    ) -> None:
        if err is None:
            self.recorder.record(
                nodeset,
                EVENT_TYPE_NORMAL,
                f"Successful{verb.title()}",
                f"{verb.lower()} Claim {claim.name} Pod {pod.name} in NodeSet {nodeset.name} successful",
            )
        else:
            self.recorder.record(
                nodeset,
                EVENT_TYPE_WARNING,
                f"Failed{verb.title()}",
                f"{verb.lower()} Claim {claim.name} for Pod {pod.name} in NodeSet "
                f"{nodeset.name} failed error: {err}",
            )