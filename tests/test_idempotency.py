#!/usr/bin/env python3
"""
Tests for the down/up state checks used to short-circuit repeated phases.
"""

import sys

import pytest

from fake_cluster import NAMESPACE, rook_node_cluster
from maint_engine import (
    MaintenanceConfig,
    OperationContext,
    down_state_mismatch,
    is_in_down_state,
    is_in_up_state,
)

NODE = "worker-01"
CONFIG = MaintenanceConfig()


def down_cluster():
    """A cluster where worker-01 is fully in maintenance."""
    cluster = rook_node_cluster(NODE)
    cluster.nodes[NODE].unschedulable = True
    cluster.flags.add("noout")
    for deployment in cluster.deployments.values():
        if deployment.node_name == NODE or deployment.name == "rook-ceph-operator":
            deployment.replicas = 0
            deployment.ready_replicas = 0
    return cluster


def test_down_state_holds():
    cluster = down_cluster()
    assert is_in_down_state(OperationContext(), cluster, CONFIG, NODE)
    assert cluster.mutations() == [], "The check must not change anything"


def break_cordon(cluster):
    cluster.nodes[NODE].unschedulable = False


def break_flag(cluster):
    cluster.flags.clear()


def break_operator(cluster):
    cluster.deployments["rook-ceph/rook-ceph-operator"].replicas = 1


def break_operator_ready(cluster):
    cluster.deployments["rook-ceph/rook-ceph-operator"].ready_replicas = 1


def break_deployment(cluster):
    cluster.deployments["rook-ceph/rook-ceph-osd-0"].replicas = 1


def break_deployment_unset_replicas(cluster):
    cluster.deployments["rook-ceph/rook-ceph-mon-a"].replicas = None


@pytest.mark.parametrize(
    "mismatch",
    [
        break_cordon,
        break_flag,
        break_operator,
        break_operator_ready,
        break_deployment,
        break_deployment_unset_replicas,
    ],
)
def test_any_single_mismatch_breaks_down_state(mismatch):
    cluster = down_cluster()
    mismatch(cluster)
    assert not is_in_down_state(OperationContext(), cluster, CONFIG, NODE), mismatch.__name__


def test_deployment_on_other_node_is_ignored():
    cluster = down_cluster()
    cluster.deployments["rook-ceph/rook-ceph-mon-b"].replicas = 1
    assert is_in_down_state(OperationContext(), cluster, CONFIG, NODE)


def test_down_state_reason():
    cluster = down_cluster()
    break_flag(cluster)
    ctx = OperationContext()
    pinned = cluster.list_node_pinned_deployments(NAMESPACE, NODE)
    assert down_state_mismatch(ctx, cluster, CONFIG, NODE, pinned) == "noout flag is not set"


def test_down_check_fails_safe_on_errors():
    cluster = down_cluster()
    cluster.fail("get_flags")
    assert not is_in_down_state(OperationContext(), cluster, CONFIG, NODE)

    cluster = down_cluster()
    cluster.fail("list_node_pinned_deployments")
    assert not is_in_down_state(OperationContext(), cluster, CONFIG, NODE)


def test_up_state_holds_on_fresh_cluster():
    cluster = rook_node_cluster(NODE)
    assert is_in_up_state(OperationContext(), cluster, CONFIG, NODE)


def test_up_state_mismatches():
    ctx = OperationContext()

    cluster = rook_node_cluster(NODE)
    cluster.nodes[NODE].unschedulable = True
    assert not is_in_up_state(ctx, cluster, CONFIG, NODE), "Cordoned node is not up"

    cluster = rook_node_cluster(NODE)
    cluster.flags.add("noout")
    assert not is_in_up_state(ctx, cluster, CONFIG, NODE), "Flag still set"

    cluster = rook_node_cluster(NODE)
    cluster.deployments["rook-ceph/rook-ceph-operator"].ready_replicas = 0
    assert not is_in_up_state(ctx, cluster, CONFIG, NODE), "Operator not ready"

    cluster = rook_node_cluster(NODE)
    cluster.deployments["rook-ceph/rook-ceph-osd-0"].replicas = 0
    assert not is_in_up_state(ctx, cluster, CONFIG, NODE), "OSD still scaled down"


def test_up_state_uses_expected_operator_replicas():
    cluster = rook_node_cluster(NODE)
    cluster.deployments["rook-ceph/rook-ceph-operator"].replicas = 2
    cluster.deployments["rook-ceph/rook-ceph-operator"].ready_replicas = 2

    assert not is_in_up_state(OperationContext(), cluster, CONFIG, NODE)
    assert is_in_up_state(OperationContext(), cluster, MaintenanceConfig(operator_replicas=2), NODE)


def test_up_state_with_given_deployments():
    cluster = rook_node_cluster(NODE)
    pending = cluster.list_node_pinned_deployments(NAMESPACE, NODE)[:1]
    assert not is_in_up_state(OperationContext(), cluster, CONFIG, NODE, pending)
    assert is_in_up_state(OperationContext(), cluster, CONFIG, NODE, [])


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
