import copy
from datetime import datetime, timedelta, timezone

import pytest

from slinkynodes.hostlist import compress
from slinkynodes.model import NodeSet
from slinkynodes.slurmcontrol import (
    JobState,
    NodeState,
    PodInfo,
    SlurmControl,
    SlurmJob,
    SlurmNode,
    SlurmNodeStatus,
    tolerate_error,
)
from slinkynodes.utils import get_node_name, new_nodeset_pod

CLUSTER = "slurm"


class FakeSlurmClient:
    def __init__(self, nodes=(), jobs=()):
        self.nodes = {node.name: copy.deepcopy(node) for node in nodes}
        self.jobs = list(jobs)
        self.updates = []

    def get_node(self, name):
        try:
            return copy.deepcopy(self.nodes[name])
        except KeyError:
            raise LookupError("Not Found") from None

    def list_nodes(self, refresh_cache=False):
        return [copy.deepcopy(node) for node in self.nodes.values()]

    def list_jobs(self):
        return list(self.jobs)

    def update_node(self, node, update):
        self.updates.append(update)
        stored = self.nodes[node.name]
        states = set(stored.state)
        for state in update.state or []:
            if state is NodeState.UNDRAIN:
                states.discard(NodeState.DRAIN)
            else:
                states.add(state)
        stored.state = list(states)
        stored.comment = update.comment
        stored.reason = update.reason


class FailingJobsClient(FakeSlurmClient):
    def list_jobs(self):
        raise RuntimeError("boom")


def new_nodeset(name="foo"):
    return NodeSet(name=name, namespace="default", cluster_name=CLUSTER, replicas=1)


def control_for(client):
    return SlurmControl({("default", CLUSTER): client})


def node_for(pod, *states, reason=None):
    return SlurmNode(name=get_node_name(pod), state=list(states), reason=reason)


def test_update_node_with_pod_info():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE)])
    control = control_for(client)

    control.update_node_with_pod_info(nodeset, pod)

    stored = client.nodes[get_node_name(pod)]
    assert PodInfo.parse(stored.comment) == PodInfo(namespace=pod.namespace, pod_name=pod.name)

    control.update_node_with_pod_info(nodeset, pod)
    assert len(client.updates) == 1


def test_make_node_drain():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE)])
    control_for(client).make_node_drain(nodeset, pod, "drain")
    stored = client.nodes[get_node_name(pod)]
    assert NodeState.DRAIN in stored.states
    assert stored.reason == "slurm-operator: drain"


def test_make_node_undrain():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE, NodeState.DRAIN)])
    control_for(client).make_node_undrain(nodeset, pod, "undrain")
    assert NodeState.DRAIN not in client.nodes[get_node_name(pod)].states


def test_make_node_undrain_skips_foreign_drain():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    node = node_for(pod, NodeState.IDLE, NodeState.DRAIN, reason="maintenance")
    client = FakeSlurmClient([node])
    control_for(client).make_node_undrain(nodeset, pod, "undrain")
    assert NodeState.DRAIN in client.nodes[get_node_name(pod)].states
    assert client.updates == []


def test_make_node_undrain_skips_undrained_node():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE)])
    control_for(client).make_node_undrain(nodeset, pod, "undrain")
    assert client.updates == []


def test_missing_node_is_tolerated():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient()
    control = control_for(client)
    control.make_node_drain(nodeset, pod, "drain")
    assert client.updates == []
    assert control.is_node_drain(nodeset, pod) is True
    assert control.is_node_drained(nodeset, pod) is True


def test_no_client_defaults():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    control = SlurmControl({})
    assert control.is_node_drain(nodeset, pod) is True
    assert control.calculate_node_status(nodeset, [pod]) == SlurmNodeStatus()
    assert control.get_node_deadlines(nodeset, [pod]) == {}
    assert control.get_node_names(nodeset, [pod]) == []


def test_get_node_names_filters_by_pods():
    nodeset = new_nodeset()
    other = new_nodeset("baz")
    pod = new_nodeset_pod(nodeset, 0, "")
    other_pod = new_nodeset_pod(other, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE), node_for(other_pod, NodeState.IDLE)])
    assert control_for(client).get_node_names(nodeset, [pod]) == [get_node_name(pod)]


def test_get_node_deadlines():
    now = datetime.now(timezone.utc).replace(microsecond=0)
    start = int(now.timestamp())
    nodeset = new_nodeset("bar")
    pod = new_nodeset_pod(nodeset, 0, "")
    pod2 = new_nodeset_pod(nodeset, 1, "")
    name0, name1 = get_node_name(pod), get_node_name(pod2)
    nodes = [node_for(pod, NodeState.MIXED), node_for(pod2, NodeState.MIXED)]
    jobs = [
        SlurmJob(job_id=1, job_state=[JobState.RUNNING], start_time=start,
                 time_limit=30 * 60, nodes=compress([name0])),
        SlurmJob(job_id=2, job_state=[JobState.RUNNING], start_time=start,
                 time_limit=45 * 60, nodes=compress([name0, name1])),
        SlurmJob(job_id=3, job_state=[JobState.RUNNING], start_time=start,
                 time_limit=60 * 60, nodes=compress([name0])),
        SlurmJob(job_id=4, job_state=[JobState.COMPLETED], nodes=compress([name0, name1])),
        SlurmJob(job_id=5, job_state=[JobState.COMPLETED], nodes=compress([name1])),
    ]
    client = FakeSlurmClient(nodes, jobs)
    deadlines = control_for(client).get_node_deadlines(nodeset, [pod, pod2])
    for name in (name0, name1):
        assert deadlines[name] > now
    assert deadlines[name0] == now + timedelta(minutes=60 * 60)
    assert deadlines[name1] == now + timedelta(minutes=45 * 60)


def test_get_node_deadlines_infinite_limit_is_latest():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    name = get_node_name(pod)
    jobs = [
        SlurmJob(job_id=1, job_state=[JobState.RUNNING], start_time=0, time_limit=10, nodes=name),
        SlurmJob(job_id=2, job_state=[JobState.RUNNING], start_time=0,
                 time_limit_infinite=True, nodes=name),
    ]
    deadlines = control_for(FakeSlurmClient(jobs=jobs)).get_node_deadlines(nodeset, [pod])
    assert deadlines[name] > datetime(2200, 1, 1, tzinfo=timezone.utc)


def test_get_node_deadlines_raises_list_error():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    with pytest.raises(RuntimeError):
        control_for(FailingJobsClient()).get_node_deadlines(nodeset, [pod])


@pytest.mark.parametrize(
    "states, want",
    [([NodeState.IDLE], False), ([NodeState.DRAIN], True)],
)
def test_is_node_drain(states, want):
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, *states)])
    assert control_for(client).is_node_drain(nodeset, pod) is want


@pytest.mark.parametrize(
    "states, want",
    [
        ([NodeState.IDLE], False),
        ([NodeState.IDLE, NodeState.DRAIN], True),
        ([NodeState.ALLOCATED, NodeState.DRAIN], False),
        ([NodeState.DOWN, NodeState.DRAIN], True),
    ],
)
def test_is_node_drained(states, want):
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, *states)])
    assert control_for(client).is_node_drained(nodeset, pod) is want


def _status_case(state_lists):
    nodeset = new_nodeset()
    pods = [new_nodeset_pod(nodeset, i, "") for i in range(len(state_lists))]
    nodes = [node_for(pod, *states) for pod, states in zip(pods, state_lists)]
    return nodeset, pods, FakeSlurmClient(nodes)


def test_calculate_node_status_empty():
    nodeset = new_nodeset()
    status = control_for(FakeSlurmClient()).calculate_node_status(nodeset, [])
    assert status == SlurmNodeStatus()


def test_calculate_node_status_different_nodesets():
    nodeset = new_nodeset("foo")
    other = new_nodeset("baz")
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient(
        [node_for(pod, NodeState.IDLE), node_for(new_nodeset_pod(other, 0, ""), NodeState.IDLE)]
    )
    status = control_for(client).calculate_node_status(nodeset, [pod])
    assert status == SlurmNodeStatus(total=1, idle=1)


def test_calculate_node_status_only_base_state():
    nodeset, pods, client = _status_case([[NodeState.IDLE]])
    assert control_for(client).calculate_node_status(nodeset, pods) == SlurmNodeStatus(total=1, idle=1)


def test_calculate_node_status_base_and_flag_state():
    nodeset, pods, client = _status_case([[NodeState.IDLE, NodeState.DRAIN]])
    assert control_for(client).calculate_node_status(nodeset, pods) == SlurmNodeStatus(
        total=1, idle=1, drain=1
    )


def test_calculate_node_status_all_base_states():
    nodeset, pods, client = _status_case(
        [[NodeState.ALLOCATED], [NodeState.DOWN], [NodeState.ERROR], [NodeState.FUTURE],
         [NodeState.IDLE], [NodeState.MIXED], [NodeState.UNKNOWN]]
    )
    assert control_for(client).calculate_node_status(nodeset, pods) == SlurmNodeStatus(
        total=7, allocated=1, down=1, error=1, future=1, idle=1, mixed=1, unknown=1
    )


def test_calculate_node_status_all_flag_states():
    nodeset, pods, client = _status_case(
        [[NodeState.COMPLETING], [NodeState.DRAIN], [NodeState.FAIL], [NodeState.INVALID],
         [NodeState.INVALID_REG], [NodeState.MAINTENANCE], [NodeState.NOT_RESPONDING],
         [NodeState.UNDRAIN]]
    )
    assert control_for(client).calculate_node_status(nodeset, pods) == SlurmNodeStatus(
        total=8, completing=1, drain=1, fail=1, invalid=1, invalid_reg=1,
        maintenance=1, not_responding=1, undrain=1,
    )


def test_calculate_node_status_all_states():
    nodeset, pods, client = _status_case(
        [
            [NodeState.ALLOCATED, NodeState.COMPLETING],
            [NodeState.DOWN, NodeState.DRAIN],
            [NodeState.ERROR, NodeState.FAIL],
            [NodeState.FUTURE, NodeState.INVALID],
            [NodeState.FUTURE, NodeState.INVALID_REG],
            [NodeState.IDLE, NodeState.MAINTENANCE],
            [NodeState.MIXED, NodeState.NOT_RESPONDING],
            [NodeState.UNKNOWN, NodeState.UNDRAIN],
        ]
    )
    assert control_for(client).calculate_node_status(nodeset, pods) == SlurmNodeStatus(
        total=8, allocated=1, down=1, error=1, future=2, idle=1, mixed=1, unknown=1,
        completing=1, drain=1, fail=1, invalid=1, invalid_reg=1, maintenance=1,
        not_responding=1, undrain=1,
    )


@pytest.mark.parametrize(
    "err, want",
    [
        (None, True),
        (Exception(""), False),
        (Exception("Not Found"), True),
        (Exception("No Content"), True),
        (Exception("Forbidden"), False),
    ],
)
def test_tolerate_error(err, want):
    assert tolerate_error(err) is want


def test_pod_info_round_trip():
    info = PodInfo(namespace="default", pod_name="foo-0")
    assert PodInfo.parse(info.to_string()) == info


@pytest.mark.parametrize("text", [None, "", "not json", "[1, 2]"])
def test_pod_info_parse_rejects_invalid(text):
    with pytest.raises(ValueError):
        PodInfo.parse(text)