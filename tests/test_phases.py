#!/usr/bin/env python3
"""
Integration tests for the down and up phase state machines.

The phases run against FakeCluster, which records every mutation so the
exact order of cordon/flag/scale calls can be checked.
"""

import sys

import pytest

from fake_cluster import NAMESPACE, rook_node_cluster
from k8s_gateway import CephHealth, Deployment, MonitorQuorumStatus
from maint_engine import (
    CancellationError,
    DiscoveryError,
    DownPhase,
    DownPhaseOptions,
    DownPhaseState,
    MaintenanceConfig,
    MutationError,
    OperationContext,
    PreflightError,
    QueueProgressForwarder,
    QuorumError,
    UpPhase,
    UpPhaseOptions,
    UpPhaseState,
    WaitSpec,
    WaitTimeoutError,
    _PhaseMachine,
    execute_down_phase,
    execute_up_phase,
    is_in_down_state,
    plan_up_phase,
)

NODE = "worker-01"
CONFIG = MaintenanceConfig()
FAST = WaitSpec(poll_interval=0.01, timeout=1, api_timeout=1)
SHORT = WaitSpec(poll_interval=0.01, timeout=0.05, api_timeout=1)

EXPECTED_DOWN_SEQUENCE = [
    ("cordon", NODE),
    ("set_flag", "noout"),
    ("scale", "rook-ceph/rook-ceph-operator", 0),
    ("scale", "rook-ceph/rook-ceph-osd-0", 0),
    ("scale", "rook-ceph/rook-ceph-mon-a", 0),
    ("scale", f"rook-ceph/rook-ceph-exporter-{NODE}", 0),
    ("scale", f"rook-ceph/rook-ceph-crashcollector-{NODE}", 0),
]


def down_options(events=None, wait_spec=FAST):
    return DownPhaseOptions(progress_callback=events.append if events is not None else None, wait_spec=wait_spec)


def up_options(events=None, deployments=None, wait_spec=FAST):
    return UpPhaseOptions(
        progress_callback=events.append if events is not None else None,
        wait_spec=wait_spec,
        deployments=deployments,
    )


def taken_down_cluster():
    cluster = rook_node_cluster(NODE)
    execute_down_phase(OperationContext(), cluster, CONFIG, NODE, down_options())
    cluster.calls.clear()
    return cluster


# ==================== Down phase ====================


def test_down_phase_mutation_order():
    """Cordon, flag, operator, then OSD before mon before exporter before crash collector."""
    cluster = rook_node_cluster(NODE)
    events = []

    outcome = execute_down_phase(OperationContext(), cluster, CONFIG, NODE, down_options(events))

    assert cluster.mutations() == EXPECTED_DOWN_SEQUENCE
    assert outcome.state == DownPhaseState.COMPLETE
    assert not outcome.already_done
    assert [d.name for d in outcome.deployments][:2] == ["rook-ceph-osd-0", "rook-ceph-mon-a"]
    assert cluster.deployments["rook-ceph/rook-ceph-mon-b"].replicas == 1, "Other nodes are untouched"
    assert is_in_down_state(OperationContext(), cluster, CONFIG, NODE)
    print("  ✓ Down phase follows the safe mutation order")


def test_down_phase_progress_events():
    """One event per stage, plus one per scaled deployment."""
    cluster = rook_node_cluster(NODE)
    events = []

    execute_down_phase(OperationContext(), cluster, CONFIG, NODE, down_options(events))

    stages = [event.stage for event in events]
    assert stages == [
        "pre-flight",
        "cordon",
        "set-flag",
        "operator",
        "discover",
        "scale-down",
        "scale-down",
        "scale-down",
        "scale-down",
        "scale-down",
        "complete",
    ]
    per_deployment = [event.deployment for event in events if event.deployment]
    assert per_deployment == [call[1] for call in EXPECTED_DOWN_SEQUENCE[3:]]


def test_down_phase_history_is_linear():
    cluster = rook_node_cluster(NODE)
    phase = DownPhase(OperationContext(), cluster, CONFIG, NODE, down_options())

    phase.run()

    assert phase.history == [
        DownPhaseState.INIT,
        DownPhaseState.PREFLIGHT,
        DownPhaseState.CORDON,
        DownPhaseState.SET_FLAG,
        DownPhaseState.SCALE_DOWN_OPERATOR,
        DownPhaseState.DISCOVER,
        DownPhaseState.SCALE_DOWN_DEPLOYMENTS,
        DownPhaseState.COMPLETE,
    ]


def test_down_phase_is_idempotent():
    """A second down run finds the node already down and changes nothing."""
    cluster = taken_down_cluster()
    events = []

    outcome = execute_down_phase(OperationContext(), cluster, CONFIG, NODE, down_options(events))

    assert outcome.already_done
    assert cluster.mutations() == []
    assert [event.stage for event in events] == ["complete"]


def test_preflight_failures_have_no_side_effects():
    ctx = OperationContext()

    cluster = rook_node_cluster(NODE)
    with pytest.raises(PreflightError, match="node worker-99 not found"):
        execute_down_phase(ctx, cluster, CONFIG, "worker-99", down_options())
    assert cluster.mutations() == []

    cluster = rook_node_cluster(NODE)
    cluster.health = CephHealth(status="HEALTH_ERR")
    with pytest.raises(PreflightError) as exc_info:
        execute_down_phase(ctx, cluster, CONFIG, NODE, down_options())
    assert cluster.mutations() == []
    assert [r.check for r in exc_info.value.results.failures()] == ["ceph reachable"]

    cluster = rook_node_cluster(NODE)
    cluster.deployments["rook-ceph/rook-ceph-tools"].ready_replicas = 0
    with pytest.raises(PreflightError, match="has no ready replicas"):
        execute_down_phase(ctx, cluster, CONFIG, NODE, down_options())
    assert cluster.mutations() == []

    cluster = rook_node_cluster(NODE)
    cluster.denied_permissions.add("update deployments/scale")
    with pytest.raises(PreflightError, match="missing permissions: update deployments/scale"):
        execute_down_phase(ctx, cluster, CONFIG, NODE, down_options())
    assert cluster.mutations() == []


def test_health_warning_does_not_block():
    cluster = rook_node_cluster(NODE)
    cluster.health = CephHealth(status="HEALTH_WARN")

    execute_down_phase(OperationContext(), cluster, CONFIG, NODE, down_options())

    assert cluster.mutations() == EXPECTED_DOWN_SEQUENCE


def test_permission_check_can_be_skipped():
    cluster = rook_node_cluster(NODE)
    cluster.denied_permissions.add("patch nodes")

    execute_down_phase(
        OperationContext(), cluster, MaintenanceConfig(check_permissions=False), NODE, down_options()
    )

    assert cluster.mutations() == EXPECTED_DOWN_SEQUENCE


def test_other_node_in_maintenance_warns():
    cluster = rook_node_cluster(NODE)
    cluster.nodes["worker-02"].unschedulable = True
    cluster.deployments["rook-ceph/rook-ceph-mon-b"].replicas = 0
    events = []

    execute_down_phase(OperationContext(), cluster, CONFIG, NODE, down_options(events))

    warnings = [event.description for event in events if event.stage == "warning"]
    assert len(warnings) == 1
    assert "worker-02" in warnings[0]
    assert cluster.mutations() == EXPECTED_DOWN_SEQUENCE, "The warning does not stop the phase"


def test_mutation_failure_halts_and_keeps_prior_steps():
    cluster = rook_node_cluster(NODE)
    cluster.fail("set_flag")
    events = []
    phase = DownPhase(OperationContext(), cluster, CONFIG, NODE, down_options(events))

    with pytest.raises(MutationError, match="failed to set noout flag"):
        phase.run()

    assert cluster.mutations() == [("cordon", NODE)], "No rollback of the cordon"
    assert cluster.nodes[NODE].unschedulable
    assert phase.state == DownPhaseState.ERROR
    assert phase.history[-2] == DownPhaseState.SET_FLAG
    assert events[-1].stage == "error"


def test_wait_timeout_stops_before_next_deployment():
    cluster = rook_node_cluster(NODE)
    cluster.stuck.add("rook-ceph/rook-ceph-osd-0")

    with pytest.raises(WaitTimeoutError, match="rook-ceph/rook-ceph-osd-0") as exc_info:
        execute_down_phase(OperationContext(), cluster, CONFIG, NODE, down_options(wait_spec=SHORT))

    assert exc_info.value.last_status.ready_replicas == 1
    assert cluster.mutations() == EXPECTED_DOWN_SEQUENCE[:4], "mon-a must not be touched"


def test_cancellation_stops_before_next_mutation():
    cluster = rook_node_cluster(NODE)
    ctx = OperationContext()
    events = []

    def cancel_at_operator(progress):
        events.append(progress)
        if progress.stage == "operator":
            ctx.cancel()

    options = DownPhaseOptions(progress_callback=cancel_at_operator, wait_spec=FAST)
    with pytest.raises(CancellationError):
        execute_down_phase(ctx, cluster, CONFIG, NODE, options)

    assert cluster.mutations() == EXPECTED_DOWN_SEQUENCE[:2]
    assert events[-1].stage == "error"


def test_discovery_failure_aborts_scaling():
    cluster = rook_node_cluster(NODE)
    cluster.fail("list_pods_on_node")

    with pytest.raises(DiscoveryError, match="failed to list pods on node worker-01"):
        execute_down_phase(OperationContext(), cluster, CONFIG, NODE, down_options())

    assert cluster.mutations() == EXPECTED_DOWN_SEQUENCE[:3]


# ==================== Up phase ====================


def test_up_phase_restores_monitors_first():
    cluster = taken_down_cluster()
    events = []

    outcome = execute_up_phase(OperationContext(), cluster, CONFIG, NODE, up_options(events))

    assert cluster.mutations() == [
        ("uncordon", NODE),
        ("scale", "rook-ceph/rook-ceph-mon-a", 1),
        ("scale", "rook-ceph/rook-ceph-osd-0", 1),
        ("scale", f"rook-ceph/rook-ceph-exporter-{NODE}", 1),
        ("scale", f"rook-ceph/rook-ceph-crashcollector-{NODE}", 1),
        ("scale", "rook-ceph/rook-ceph-operator", 1),
        ("unset_flag", "noout"),
    ]
    assert outcome.state == UpPhaseState.COMPLETE
    stages = [event.stage for event in events]
    touched = [event.deployment for event in events]
    mon_at = touched.index("rook-ceph/rook-ceph-mon-a")
    osd_at = touched.index("rook-ceph/rook-ceph-osd-0")
    assert mon_at < stages.index("quorum") < osd_at, "Quorum wait must come between monitors and OSDs"
    assert stages[-1] == "complete"


def test_up_phase_replica_targets():
    """No declared count restores 1 replica; a declared count N restores N."""
    cluster = taken_down_cluster()
    confirmed = [
        Deployment(namespace=NAMESPACE, name="rook-ceph-osd-0", replicas=None, node_name=NODE),
        Deployment(namespace=NAMESPACE, name=f"rook-ceph-exporter-{NODE}", replicas=3, node_name=NODE),
        Deployment(namespace=NAMESPACE, name="rook-ceph-mon-a", replicas=0, node_name=NODE),
    ]

    execute_up_phase(OperationContext(), cluster, CONFIG, NODE, up_options(deployments=confirmed))

    scales = {call[1]: call[2] for call in cluster.mutations() if call[0] == "scale"}
    assert scales["rook-ceph/rook-ceph-osd-0"] == 1
    assert scales[f"rook-ceph/rook-ceph-exporter-{NODE}"] == 3
    assert scales["rook-ceph/rook-ceph-mon-a"] == 1


def test_up_phase_executes_exactly_the_confirmed_plan():
    """Deployments that appear after confirmation are not restored."""
    cluster = taken_down_cluster()
    ctx = OperationContext()
    plan = plan_up_phase(ctx, cluster, CONFIG, NODE)
    assert [d.name for d in plan.deployments][0] == "rook-ceph-mon-a"

    cluster.add_deployment(NAMESPACE, "rook-ceph-osd-7", replicas=0, node=NODE)
    cluster.reads.clear()

    outcome = execute_up_phase(ctx, cluster, CONFIG, NODE, up_options(deployments=plan.deployments))

    scaled = [call[1] for call in cluster.mutations() if call[0] == "scale"]
    assert "rook-ceph/rook-ceph-osd-7" not in scaled
    assert [d.key for d in outcome.deployments] == [d.key for d in plan.deployments]
    assert not [r for r in cluster.reads if r[0] in ("list_node_pinned_deployments", "list_pods_on_node")], (
        "No rediscovery when a confirmed plan is given"
    )


def test_up_phase_nothing_to_do():
    cluster = rook_node_cluster(NODE)
    events = []

    phase = UpPhase(OperationContext(), cluster, CONFIG, NODE, up_options(events))
    outcome = phase.run()

    assert outcome.already_done
    assert outcome.state == UpPhaseState.NOTHING_TO_DO
    assert phase.history == [UpPhaseState.INIT, UpPhaseState.DISCOVER, UpPhaseState.NOTHING_TO_DO]
    assert cluster.mutations() == []


def test_up_phase_after_partial_down():
    """Cordoned node with nothing scaled down still gets uncordoned and the flag unset."""
    cluster = rook_node_cluster(NODE)
    cluster.nodes[NODE].unschedulable = True
    cluster.flags.add("noout")
    events = []

    execute_up_phase(OperationContext(), cluster, CONFIG, NODE, up_options(events))

    assert cluster.mutations() == [
        ("uncordon", NODE),
        ("scale", "rook-ceph/rook-ceph-operator", 1),
        ("unset_flag", "noout"),
    ]
    assert "skip" in [event.stage for event in events]


def test_up_phase_without_monitors_skips_quorum_wait():
    cluster = taken_down_cluster()
    cluster.fail("get_monitor_status")
    confirmed = [Deployment(namespace=NAMESPACE, name="rook-ceph-osd-0", replicas=0, node_name=NODE)]

    execute_up_phase(OperationContext(), cluster, CONFIG, NODE, up_options(deployments=confirmed))

    assert ("scale", "rook-ceph/rook-ceph-osd-0", 1) in cluster.mutations()


def test_up_phase_quorum_timeout_stops_before_osds():
    cluster = taken_down_cluster()
    cluster.monitor_status = MonitorQuorumStatus(total_count=3, in_quorum=1, quorum_names=["b"])

    with pytest.raises(QuorumError):
        execute_up_phase(OperationContext(), cluster, CONFIG, NODE, up_options(wait_spec=SHORT))

    assert cluster.mutations() == [
        ("uncordon", NODE),
        ("scale", "rook-ceph/rook-ceph-mon-a", 1),
    ]


def test_up_phase_operator_replicas_from_config():
    cluster = taken_down_cluster()
    config = MaintenanceConfig(operator_replicas=2)

    execute_up_phase(OperationContext(), cluster, config, NODE, up_options())

    assert ("scale", "rook-ceph/rook-ceph-operator", 2) in cluster.mutations()


def test_up_phase_preflight_failure():
    cluster = taken_down_cluster()
    cluster.namespaces.clear()

    with pytest.raises(PreflightError, match="namespace rook-ceph not found"):
        execute_up_phase(OperationContext(), cluster, CONFIG, NODE, up_options())

    assert cluster.mutations() == []


def test_down_then_up_round_trip():
    cluster = rook_node_cluster(NODE)
    ctx = OperationContext()

    execute_down_phase(ctx, cluster, CONFIG, NODE, down_options())
    execute_up_phase(ctx, cluster, CONFIG, NODE, up_options())

    assert not cluster.nodes[NODE].unschedulable
    assert "noout" not in cluster.flags
    assert all(d.replicas == 1 for d in cluster.deployments.values())

def test_phase_machine_requires_run():
    with pytest.raises(TypeError):
        _PhaseMachine(OperationContext(), rook_node_cluster(NODE), CONFIG, NODE, None, FAST)

    class NoSteps(_PhaseMachine):
        initial_state = DownPhaseState.INIT

    with pytest.raises(TypeError):
        NoSteps(OperationContext(), rook_node_cluster(NODE), CONFIG, NODE, None, FAST)



# ==================== Progress forwarding ====================


def test_queue_forwarder_drops_when_full():
    """A slow reader never blocks the phase; overflow events are dropped and counted."""
    forwarder = QueueProgressForwarder(maxsize=3)
    cluster = rook_node_cluster(NODE)

    options = DownPhaseOptions(progress_callback=forwarder, wait_spec=FAST)
    execute_down_phase(OperationContext(), cluster, CONFIG, NODE, options)

    events = forwarder.drain()
    assert [event.stage for event in events] == ["pre-flight", "cordon", "set-flag"]
    assert forwarder.dropped == 8
    assert forwarder.drain() == []


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
