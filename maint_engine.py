"""
Rook-Ceph Node Maintenance Engine

This module drives the two maintenance phases for a Rook-Ceph worker node:
1. Down: cordon the node, set the Ceph noout flag, stop the Rook operator and
   scale every Ceph daemon deployment on the node to zero (OSDs before monitors)
2. Up: uncordon the node, restore the daemons (monitors first, then wait for
   monitor quorum), restart the operator and unset the flag

Both phases are linear state machines. Each mutation is followed by a bounded
wait for the cluster to converge before the next one starts. Nothing is stored
between phases: the Up phase rediscovers what to restore from the deployments
still pinned to the node with zero replicas.

Terminology:
- NODE-PINNED: a deployment whose pods can only run on one node (hostname
  nodeSelector or required node affinity), as Rook does for OSDs, monitors,
  exporters and crash collectors
- DOWN STATE: node cordoned, flag set, operator at 0, pinned daemons at 0
- UP STATE: node schedulable, flag unset, operator running, nothing pinned to
  the node left at 0 replicas
"""

import queue
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pendulum
from loguru import logger

from k8s_gateway import (
    ClusterGateway,
    Deployment,
    DeploymentStatus,
    GatewayError,
    MonitorQuorumStatus,
    NotFoundError,
)

OSD_PREFIX = "rook-ceph-osd"
MON_PREFIX = "rook-ceph-mon"
EXPORTER_PREFIX = "rook-ceph-exporter"
CRASH_COLLECTOR_PREFIX = "rook-ceph-crashcollector"

DEFAULT_PREFIXES = (OSD_PREFIX, MON_PREFIX, EXPORTER_PREFIX, CRASH_COLLECTOR_PREFIX)

# OSDs stop taking writes before monitors are disturbed
DOWN_ORDER = (OSD_PREFIX, MON_PREFIX, EXPORTER_PREFIX, CRASH_COLLECTOR_PREFIX)
# Monitors reach quorum before OSDs rejoin
UP_ORDER = (MON_PREFIX, OSD_PREFIX, EXPORTER_PREFIX, CRASH_COLLECTOR_PREFIX)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_WAIT_TIMEOUT = 300.0
DEFAULT_API_TIMEOUT = 30.0
MIN_CALL_TIMEOUT = 0.1

DEFAULT_PROGRESS_BUFFER = 10

DNS_1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


# ==================== Errors ====================


class MaintenanceError(Exception):
    """Base class for every failure raised by a maintenance phase."""


class PreflightError(MaintenanceError):
    """Pre-flight validation failed; nothing was changed."""

    def __init__(self, message: str, results: Optional["ValidationResults"] = None):
        super().__init__(message)
        self.results = results


class DiscoveryError(MaintenanceError):
    """Listing pods/deployments or resolving pod ownership failed."""


class MutationError(MaintenanceError):
    """A cordon, scale or flag change was rejected by the cluster."""


class StatusFetchError(MaintenanceError):
    """Reading status failed while waiting for a condition."""


class DeadlineExceededError(MaintenanceError):
    """The operation ran out of time."""


class WaitTimeoutError(DeadlineExceededError):
    """A condition did not hold before the wait timed out."""

    def __init__(self, message: str, last_status=None, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.last_status = last_status
        self.last_error = last_error


class QuorumError(WaitTimeoutError):
    """Ceph monitors did not reach quorum in time."""


class CancellationError(MaintenanceError):
    """The caller cancelled the operation."""


# ==================== Configuration ====================


@dataclass(frozen=True)
class MaintenanceConfig:
    """Settings for one maintenance run, passed explicitly to every phase."""

    namespace: str = "rook-ceph"
    operator_deployment: str = "rook-ceph-operator"
    operator_replicas: int = 1
    tools_deployment: str = "rook-ceph-tools"
    prefixes: Tuple[str, ...] = DEFAULT_PREFIXES
    maintenance_flag: str = "noout"
    api_timeout: float = DEFAULT_API_TIMEOUT
    wait_timeout: float = DEFAULT_WAIT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    ceph_command_timeout: float = 20.0
    check_permissions: bool = True

    def validate(self) -> List[str]:
        """
        Check the settings.

        Returns:
            List of error messages, empty if the configuration is valid
        """
        errors = []
        if len(self.namespace) > 63 or not DNS_1123_LABEL.match(self.namespace):
            errors.append(f"Namespace '{self.namespace}' is not a valid DNS-1123 label")
        if not self.operator_deployment:
            errors.append("Operator deployment name must not be empty")
        if self.operator_replicas < 1:
            errors.append("Operator replicas must be at least 1")
        if not self.maintenance_flag:
            errors.append("Maintenance flag must not be empty")
        for name in ("api_timeout", "wait_timeout", "ceph_command_timeout"):
            if getattr(self, name) < 1:
                errors.append(f"{name.replace('_', ' ').capitalize()} must be at least 1 second")
        if self.poll_interval <= 0:
            errors.append("Poll interval must be positive")
        return errors

    def wait_spec(self, progress: Optional[Callable] = None) -> "WaitSpec":
        return WaitSpec(
            poll_interval=self.poll_interval,
            timeout=self.wait_timeout,
            api_timeout=self.api_timeout,
            progress=progress,
        )


# ==================== Operation Context ====================


class OperationContext:
    """
    Cancellation and deadline shared by every blocking call of a phase.

    Contexts derived with with_timeout() share the cancel event of their parent
    and can only shorten its deadline.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ):
        """
        Args:
            timeout: Seconds from now until the context expires (None for no limit)
            cancel_event: Event shared with the canceller
            deadline: Absolute time.monotonic() deadline inherited from a parent
        """
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        if timeout is not None:
            expires = time.monotonic() + timeout
            deadline = expires if deadline is None else min(deadline, expires)
        self.deadline = deadline

    def with_timeout(self, timeout: Optional[float]) -> "OperationContext":
        return OperationContext(
            timeout=timeout, cancel_event=self._cancel_event, deadline=self.deadline
        )

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def call_timeout(self, api_timeout: float) -> float:
        """Per-call timeout clipped to the time left on this context."""
        remaining = self.remaining()
        if remaining is None:
            return api_timeout
        return max(min(api_timeout, remaining), MIN_CALL_TIMEOUT)

    def sleep(self, seconds: float) -> bool:
        """
        Sleep, waking early on cancellation or at the deadline.

        Returns:
            True if the context was cancelled
        """
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        return self._cancel_event.wait(max(seconds, 0.0))

    def check(self, action: str) -> None:
        """Raise if the context was cancelled or has expired."""
        if self.cancelled:
            raise CancellationError(f"context cancelled before {action}")
        if self.expired:
            raise DeadlineExceededError(f"deadline exceeded before {action}")


# ==================== Condition Waiter ====================


@dataclass(frozen=True)
class WaitSpec:
    """
    Polling parameters for a single wait.

    Zero values are replaced by the defaults (5s poll interval, 300s timeout,
    30s per-call API timeout) when the wait starts.
    """

    poll_interval: float = 0
    timeout: float = 0
    api_timeout: float = 0
    progress: Optional[Callable] = None  # Receives every fetched status

    def with_defaults(self) -> "WaitSpec":
        return replace(
            self,
            poll_interval=self.poll_interval or DEFAULT_POLL_INTERVAL,
            timeout=self.timeout or DEFAULT_WAIT_TIMEOUT,
            api_timeout=self.api_timeout or DEFAULT_API_TIMEOUT,
        )


def wait_for(
    ctx: OperationContext,
    fetch_status: Callable,
    predicate: Callable,
    spec: Optional[WaitSpec] = None,
    description: str = "condition",
    tolerate_fetch_errors: bool = False,
    timeout_error=WaitTimeoutError,
    hint: str = "",
):
    """
    Poll a status until a predicate holds.

    The status is fetched once before the first tick, so a condition that
    already holds returns without polling. The tick that reaches the deadline
    is still polled, and one more fetch with its own fresh timeout follows it;
    if either of those satisfies the predicate the wait succeeds, otherwise the
    latest state is reported in the timeout error.

    Args:
        ctx: Context bounding the whole wait
        fetch_status: Callable taking timeout= and returning the current status
        predicate: Callable returning True once the status is acceptable
        spec: Polling parameters
        description: What is being waited for, used in log and error messages
        tolerate_fetch_errors: Keep polling when a fetch raises GatewayError
        timeout_error: WaitTimeoutError subclass raised on timeout
        hint: Extra advice appended to the timeout message

    Returns:
        The status that satisfied the predicate

    Raises:
        WaitTimeoutError: The deadline passed before the predicate held
        CancellationError: The context was cancelled
        StatusFetchError: A fetch failed and errors are not tolerated
    """
    spec = (spec or WaitSpec()).with_defaults()
    wait_ctx = ctx.with_timeout(spec.timeout)
    started = time.monotonic()
    last_status = None
    last_error = None

    def observe(fresh_timeout: bool = False) -> bool:
        nonlocal last_status, last_error
        timeout = spec.api_timeout if fresh_timeout else wait_ctx.call_timeout(spec.api_timeout)
        try:
            status = fetch_status(timeout=timeout)
        except GatewayError as e:
            if not tolerate_fetch_errors:
                raise StatusFetchError(
                    f"failed to get status while waiting for {description}: {e}"
                ) from e
            logger.debug(f"Status fetch failed while waiting for {description}: {e}")
            last_error = e
            return False

        last_status = status
        last_error = None
        if spec.progress:
            spec.progress(status)
        return predicate(status)

    if ctx.cancelled:
        raise CancellationError(f"context cancelled while waiting for {description}")

    logger.debug(f"Waiting for {description} (timeout {spec.timeout:.0f}s)")
    if observe():
        logger.debug(f"Condition already met: {description}")
        return last_status

    polls = 0
    while True:
        if wait_ctx.sleep(spec.poll_interval):
            raise CancellationError(f"context cancelled while waiting for {description}")

        # The tick that lands on the deadline is still polled
        polls += 1
        if observe(fresh_timeout=wait_ctx.expired):
            logger.debug(f"Condition met after {polls} poll(s): {description}")
            return last_status
        if wait_ctx.expired:
            break

    if ctx.cancelled:
        raise CancellationError(f"context cancelled while waiting for {description}")

    # Final read with a fresh timeout, the wait deadline is already gone
    try:
        status = fetch_status(timeout=spec.api_timeout)
    except GatewayError as e:
        logger.debug(f"Final status fetch failed for {description}: {e}")
        if last_status is None:
            last_error = e
    else:
        last_status = status
        last_error = None
        if spec.progress:
            spec.progress(status)
        if predicate(status):
            logger.debug(f"Condition met at the deadline: {description}")
            return status

    elapsed = time.monotonic() - started
    message = f"timeout waiting for {description} after {elapsed:.0f}s"
    if last_error is not None:
        message += f" - last error: {last_error}"
    elif last_status is not None:
        message += f" - current state: {last_status}"
    if hint:
        message += f" - {hint}"
    raise timeout_error(message, last_status=last_status, last_error=last_error)


def scale_down_condition(status: DeploymentStatus) -> bool:
    return status.ready_replicas == 0


def scale_up_condition(target: int) -> Callable[[DeploymentStatus], bool]:
    def condition(status: DeploymentStatus) -> bool:
        return status.replicas == target and status.ready_replicas == target

    return condition


def ready_condition(expected: int) -> Callable[[DeploymentStatus], bool]:
    def condition(status: DeploymentStatus) -> bool:
        return status.ready_replicas >= expected

    return condition


def wait_for_scale_down(
    ctx: OperationContext,
    gateway: ClusterGateway,
    namespace: str,
    name: str,
    spec: Optional[WaitSpec] = None,
) -> DeploymentStatus:
    """Wait until a deployment has no ready replicas."""
    return wait_for(
        ctx,
        partial(gateway.get_deployment_status, namespace, name),
        scale_down_condition,
        spec,
        description=f"deployment {namespace}/{name} to scale down to 0 ready replicas",
    )


def wait_for_scale_up(
    ctx: OperationContext,
    gateway: ClusterGateway,
    namespace: str,
    name: str,
    target: int,
    spec: Optional[WaitSpec] = None,
) -> DeploymentStatus:
    """Wait until a deployment runs exactly target replicas, all ready."""
    return wait_for(
        ctx,
        partial(gateway.get_deployment_status, namespace, name),
        scale_up_condition(target),
        spec,
        description=f"deployment {namespace}/{name} to scale up to {target} replicas",
    )


def wait_for_ready(
    ctx: OperationContext,
    gateway: ClusterGateway,
    namespace: str,
    name: str,
    expected: int,
    spec: Optional[WaitSpec] = None,
) -> DeploymentStatus:
    """Wait until a deployment has at least expected ready replicas."""
    return wait_for(
        ctx,
        partial(gateway.get_deployment_status, namespace, name),
        ready_condition(expected),
        spec,
        description=f"deployment {namespace}/{name} to reach {expected} ready replicas",
    )


def wait_for_deployments_scale_down(
    ctx: OperationContext,
    gateway: ClusterGateway,
    deployments: Sequence[Deployment],
    spec: Optional[WaitSpec] = None,
) -> None:
    """Wait for each deployment in turn to reach 0 ready replicas."""
    for deployment in deployments:
        wait_for_scale_down(ctx, gateway, deployment.namespace, deployment.name, spec)


def wait_for_deployments_scale_up(
    ctx: OperationContext,
    gateway: ClusterGateway,
    deployments: Sequence[Deployment],
    spec: Optional[WaitSpec] = None,
) -> None:
    """Wait for each deployment in turn to run its target replica count."""
    for deployment in deployments:
        wait_for_scale_up(
            ctx,
            gateway,
            deployment.namespace,
            deployment.name,
            deployment.target_replicas,
            spec,
        )


def wait_for_monitor_quorum(
    ctx: OperationContext,
    gateway: ClusterGateway,
    namespace: str,
    spec: Optional[WaitSpec] = None,
) -> MonitorQuorumStatus:
    """
    Wait until the Ceph monitors form a quorum.

    Failures to read the quorum are expected while the tools pod or the
    monitors are starting, so they are retried until the timeout and only the
    latest one is reported.

    Raises:
        QuorumError: No quorum before the timeout
        CancellationError: The context was cancelled
    """
    return wait_for(
        ctx,
        partial(gateway.get_monitor_status, namespace),
        MonitorQuorumStatus.has_quorum,
        spec,
        description="Ceph monitor quorum",
        tolerate_fetch_errors=True,
        timeout_error=QuorumError,
        hint="inspect manually with 'ceph quorum_status' via rook-ceph-tools",
    )


# ==================== Deployment Discovery ====================


def matches_prefix(name: str, prefixes: Sequence[str]) -> bool:
    """An empty prefix list matches every name."""
    if not prefixes:
        return True
    return any(name.startswith(prefix) for prefix in prefixes)


def _first_matching_prefix(name: str, prefixes: Sequence[str]) -> Optional[str]:
    for prefix in prefixes:
        if name.startswith(prefix):
            return prefix
    return None


def discover_deployments(
    ctx: OperationContext,
    gateway: ClusterGateway,
    node_name: str,
    namespace: Optional[str] = None,
    prefixes: Sequence[str] = DEFAULT_PREFIXES,
    api_timeout: float = DEFAULT_API_TIMEOUT,
) -> List[Deployment]:
    """
    Find the deployments that have pods running on a node.

    Pods are resolved to their owning deployment through their ReplicaSet.
    Pods owned by anything else (DaemonSets, StatefulSets, bare pods) are
    skipped. Each deployment is returned once, in the order its first pod was
    listed.

    Args:
        ctx: Context bounding the discovery
        gateway: Cluster gateway
        node_name: Node to inspect
        namespace: Only consider pods in this namespace (None for all)
        prefixes: Deployment name prefixes to keep (empty keeps everything)
        api_timeout: Per-call API timeout

    Returns:
        List of Deployment objects

    Raises:
        DiscoveryError: Listing pods, resolving an owner or reading a deployment failed
    """
    ctx.check(f"discovering deployments on node {node_name}")
    try:
        pods = gateway.list_pods_on_node(node_name, timeout=ctx.call_timeout(api_timeout))
    except GatewayError as e:
        raise DiscoveryError(f"failed to list pods on node {node_name}: {e}") from e

    found: Dict[str, Tuple[str, str]] = {}
    for pod in pods:
        if namespace and pod.namespace != namespace:
            continue

        try:
            chain = gateway.get_owner_chain(pod, timeout=ctx.call_timeout(api_timeout))
        except GatewayError as e:
            raise DiscoveryError(f"failed to resolve owner of pod {pod.key}: {e}") from e

        if chain.deployment is None:
            logger.debug(f"Skipping pod {pod.key}: owned by {chain.kind or 'nothing'}")
            continue
        if not matches_prefix(chain.deployment, prefixes):
            continue

        key = f"{pod.namespace}/{chain.deployment}"
        if key not in found:
            found[key] = (pod.namespace, chain.deployment)

    deployments = []
    for deployment_namespace, name in found.values():
        try:
            deployment = gateway.get_deployment(
                deployment_namespace, name, timeout=ctx.call_timeout(api_timeout)
            )
        except GatewayError as e:
            raise DiscoveryError(
                f"failed to get deployment {deployment_namespace}/{name}: {e}"
            ) from e
        if deployment.node_name is None:
            # Not pinned by selector or affinity; placement is the pin
            deployment = replace(deployment, node_name=node_name)
        deployments.append(deployment)

    logger.info(f"Discovered {len(deployments)} deployment(s) on node {node_name}")
    return deployments


def order_by_prefixes(
    deployments: Sequence[Deployment], order: Sequence[str]
) -> List[Deployment]:
    """
    Order deployments by the first prefix they match.

    Deployments matching no prefix keep their relative order and go last.
    """
    buckets: Dict[str, List[Deployment]] = {prefix: [] for prefix in order}
    unmatched = []
    for deployment in deployments:
        prefix = _first_matching_prefix(deployment.name, order)
        if prefix is None:
            unmatched.append(deployment)
        else:
            buckets[prefix].append(deployment)

    ordered = []
    for prefix in order:
        ordered.extend(buckets[prefix])
    return ordered + unmatched


def order_deployments_for_down(deployments: Sequence[Deployment]) -> List[Deployment]:
    """OSDs, monitors, exporters, crash collectors, then everything else."""
    return order_by_prefixes(deployments, DOWN_ORDER)


def order_deployments_for_up(deployments: Sequence[Deployment]) -> List[Deployment]:
    """Monitors, OSDs, exporters, crash collectors, then everything else."""
    return order_by_prefixes(deployments, UP_ORDER)


def group_deployments_by_prefix(
    deployments: Sequence[Deployment], prefixes: Sequence[str] = DEFAULT_PREFIXES
) -> Dict[str, List[Deployment]]:
    """Group deployments under the first prefix they match; unmatched ones are left out."""
    groups: Dict[str, List[Deployment]] = {}
    for deployment in deployments:
        prefix = _first_matching_prefix(deployment.name, prefixes)
        if prefix is not None:
            groups.setdefault(prefix, []).append(deployment)
    return groups


def deployment_names(deployments: Sequence[Deployment]) -> List[str]:
    return [deployment.key for deployment in deployments]


def list_pinned_deployments(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
) -> List[Deployment]:
    """
    List Rook daemon deployments pinned to a node.

    Raises:
        DiscoveryError: The deployments could not be listed
    """
    try:
        pinned = gateway.list_node_pinned_deployments(
            config.namespace, node_name, timeout=ctx.call_timeout(config.api_timeout)
        )
    except GatewayError as e:
        raise DiscoveryError(f"failed to list deployments pinned to node {node_name}: {e}") from e
    return [d for d in pinned if matches_prefix(d.name, config.prefixes)]


def discover_scaled_down_deployments(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
) -> List[Deployment]:
    """Pinned Rook daemon deployments of a node that are currently at 0 replicas."""
    scaled_down = [
        d
        for d in list_pinned_deployments(ctx, gateway, config, node_name)
        if d.is_scaled_down()
    ]
    logger.info(f"Found {len(scaled_down)} scaled-down deployment(s) pinned to node {node_name}")
    return scaled_down


def warn_multi_replica_deployments(deployments: Sequence[Deployment]) -> List[str]:
    """Log a warning for every deployment declaring more than one replica."""
    warnings = []
    for deployment in deployments:
        if deployment.desired_replicas > 1:
            warning = (
                f"Deployment {deployment.key} has {deployment.desired_replicas} replicas; "
                f"node-pinned Rook daemons normally run a single replica"
            )
            logger.warning(warning)
            warnings.append(warning)
    return warnings


# ==================== Idempotency Checks ====================


def down_state_mismatch(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
    deployments: Sequence[Deployment],
) -> Optional[str]:
    """
    Explain why a node is not in the down state.

    Returns:
        Reason string, or None if the down state holds

    Raises:
        GatewayError: The cluster could not be queried
    """
    timeout = ctx.call_timeout(config.api_timeout)

    for deployment in deployments:
        if deployment.desired_replicas != 0 or deployment.ready_replicas != 0:
            return (
                f"deployment {deployment.key} is not scaled down "
                f"(replicas={deployment.desired_replicas}, ready={deployment.ready_replicas})"
            )

    node = gateway.get_node_status(node_name, timeout=timeout)
    if not node.unschedulable:
        return f"node {node_name} is not cordoned"

    flags = gateway.get_flags(config.namespace, timeout=timeout)
    if not flags.is_set(config.maintenance_flag):
        return f"{config.maintenance_flag} flag is not set"

    operator = gateway.get_deployment(config.namespace, config.operator_deployment, timeout=timeout)
    if operator.desired_replicas != 0 or operator.ready_replicas != 0:
        return (
            f"operator {operator.key} is not scaled down "
            f"(replicas={operator.desired_replicas}, ready={operator.ready_replicas})"
        )
    return None


def up_state_mismatch(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
    scaled_down: Sequence[Deployment],
) -> Optional[str]:
    """
    Explain why a node is not in the up state.

    Returns:
        Reason string, or None if the up state holds

    Raises:
        GatewayError: The cluster could not be queried
    """
    timeout = ctx.call_timeout(config.api_timeout)

    if scaled_down:
        return f"{len(scaled_down)} deployment(s) still scaled down: {', '.join(deployment_names(scaled_down))}"

    node = gateway.get_node_status(node_name, timeout=timeout)
    if node.unschedulable:
        return f"node {node_name} is cordoned"

    flags = gateway.get_flags(config.namespace, timeout=timeout)
    if flags.is_set(config.maintenance_flag):
        return f"{config.maintenance_flag} flag is set"

    operator = gateway.get_deployment(config.namespace, config.operator_deployment, timeout=timeout)
    expected = config.operator_replicas
    if operator.desired_replicas != expected or operator.ready_replicas != expected:
        return (
            f"operator {operator.key} is not at {expected} replica(s) "
            f"(replicas={operator.desired_replicas}, ready={operator.ready_replicas})"
        )
    return None


def is_in_down_state(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
    deployments: Optional[Sequence[Deployment]] = None,
) -> bool:
    """
    Check whether the down phase has nothing left to do.

    Any error reading the cluster counts as "not down" so the phase runs and
    reports the problem itself.

    Args:
        deployments: Pinned deployments of the node (listed if omitted)
    """
    try:
        if deployments is None:
            deployments = list_pinned_deployments(ctx, gateway, config, node_name)
        reason = down_state_mismatch(ctx, gateway, config, node_name, deployments)
    except (GatewayError, MaintenanceError) as e:
        logger.debug(f"Could not check down state of node {node_name}: {e}")
        return False

    if reason:
        logger.debug(f"Node {node_name} not in down state: {reason}")
        return False
    return True


def is_in_up_state(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
    scaled_down: Optional[Sequence[Deployment]] = None,
) -> bool:
    """
    Check whether the up phase has nothing left to do.

    Args:
        scaled_down: Deployments still to be restored (discovered if omitted)
    """
    try:
        if scaled_down is None:
            scaled_down = discover_scaled_down_deployments(ctx, gateway, config, node_name)
        reason = up_state_mismatch(ctx, gateway, config, node_name, scaled_down)
    except (GatewayError, MaintenanceError) as e:
        logger.debug(f"Could not check up state of node {node_name}: {e}")
        return False

    if reason:
        logger.debug(f"Node {node_name} not in up state: {reason}")
        return False
    return True


# ==================== Pre-flight Validation ====================


@dataclass
class ValidationResult:
    check: str
    passed: bool
    message: str = ""
    error: Optional[str] = None

    def __str__(self) -> str:
        if self.passed:
            return f"✓ {self.check}: {self.message}" if self.message else f"✓ {self.check}"
        return f"✗ {self.check}: {self.error}"


@dataclass
class ValidationResults:
    """Ordered outcome of the pre-flight checks."""

    results: List[ValidationResult] = field(default_factory=list)

    def add(self, check: str, passed: bool, message: str = "", error: Optional[str] = None) -> None:
        self.results.append(ValidationResult(check, passed, message, error))

    def all_passed(self) -> bool:
        return all(result.passed for result in self.results)

    def failures(self) -> List[ValidationResult]:
        return [result for result in self.results if not result.passed]

    def __str__(self) -> str:
        return "\n".join(str(result) for result in self.results)


# verb, resource, group, subresource, namespaced
REQUIRED_PERMISSIONS = [
    ("patch", "nodes", "", "", False),
    ("update", "deployments", "apps", "scale", True),
    ("get", "deployments", "apps", "", True),
    ("list", "pods", "", "", False),
    ("create", "pods", "", "exec", True),
]


def _check_node(results, gateway, node_name, timeout) -> None:
    try:
        exists = gateway.node_exists(node_name, timeout=timeout)
    except GatewayError as e:
        results.add("node exists", False, error=f"failed to check node {node_name}: {e}")
        return
    if exists:
        results.add("node exists", True, f"node {node_name} found")
    else:
        results.add("node exists", False, error=f"node {node_name} not found")


def _check_namespace(results, gateway, namespace, timeout) -> None:
    try:
        exists = gateway.namespace_exists(namespace, timeout=timeout)
    except GatewayError as e:
        results.add("namespace exists", False, error=f"failed to check namespace {namespace}: {e}")
        return
    if exists:
        results.add("namespace exists", True, f"namespace {namespace} found")
    else:
        results.add("namespace exists", False, error=f"namespace {namespace} not found")


def _check_tools(results, gateway, config, timeout) -> None:
    key = f"{config.namespace}/{config.tools_deployment}"
    try:
        status = gateway.get_deployment_status(config.namespace, config.tools_deployment, timeout=timeout)
    except NotFoundError:
        results.add("rook-ceph-tools ready", False, error=f"deployment {key} not found")
        return
    except GatewayError as e:
        results.add("rook-ceph-tools ready", False, error=f"failed to get deployment {key}: {e}")
        return
    if status.ready_replicas >= 1:
        results.add("rook-ceph-tools ready", True, f"{key}: {status.ready_replicas} ready")
    else:
        results.add("rook-ceph-tools ready", False, error=f"deployment {key} has no ready replicas")


def _check_ceph_health(results, gateway, config, timeout) -> None:
    try:
        health = gateway.get_ceph_status(config.namespace, timeout=timeout)
    except GatewayError as e:
        results.add("ceph reachable", False, error=f"failed to query Ceph status: {e}")
        return
    if health.is_error():
        results.add("ceph reachable", False, error=f"Ceph reports {health}")
        return
    if not health.is_healthy():
        logger.warning(f"Ceph cluster is not fully healthy: {health}")
    results.add("ceph reachable", True, str(health))


def _check_permissions(results, gateway, config, timeout) -> None:
    missing = []
    for verb, resource, group, subresource, namespaced in REQUIRED_PERMISSIONS:
        name = f"{resource}/{subresource}" if subresource else resource
        try:
            allowed = gateway.check_permission(
                verb,
                resource,
                namespace=config.namespace if namespaced else None,
                group=group,
                subresource=subresource,
                timeout=timeout,
            )
        except GatewayError as e:
            # Access reviews can themselves be forbidden; the phase will surface real denials
            logger.warning(f"Could not verify permission {verb} {name}: {e}")
            continue
        if not allowed:
            missing.append(f"{verb} {name}")

    if missing:
        results.add("rbac permissions", False, error=f"missing permissions: {', '.join(missing)}")
    else:
        results.add("rbac permissions", True)


def validate_down_phase(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
) -> ValidationResults:
    """Read-only checks run before the first down-phase mutation."""
    timeout = ctx.call_timeout(config.api_timeout)
    results = ValidationResults()
    _check_node(results, gateway, node_name, timeout)
    _check_namespace(results, gateway, config.namespace, timeout)
    _check_tools(results, gateway, config, timeout)
    _check_ceph_health(results, gateway, config, timeout)
    if config.check_permissions:
        _check_permissions(results, gateway, config, timeout)
    return results


def validate_up_phase(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
) -> ValidationResults:
    """
    Read-only checks run before the first up-phase mutation.

    The tools pod is not required here: it may itself be waiting for the
    node to come back.
    """
    timeout = ctx.call_timeout(config.api_timeout)
    results = ValidationResults()
    _check_node(results, gateway, node_name, timeout)
    _check_namespace(results, gateway, config.namespace, timeout)
    if config.check_permissions:
        _check_permissions(results, gateway, config, timeout)
    return results


@dataclass
class OtherNodesMaintenanceInfo:
    """Signs that another node is already down for maintenance."""

    flag: str = "noout"
    flag_set: bool = False
    nodes: List[str] = field(default_factory=list)

    def has_warning(self) -> bool:
        return self.flag_set or bool(self.nodes)

    def warning_message(self) -> str:
        parts = []
        if self.flag_set:
            parts.append(f"the {self.flag} flag is already set")
        if self.nodes:
            parts.append(f"node(s) {', '.join(self.nodes)} are cordoned with scaled-down Ceph daemons")
        if not parts:
            return ""
        return "Another node may be in maintenance: " + "; ".join(parts)


def check_other_nodes_in_maintenance(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
) -> OtherNodesMaintenanceInfo:
    """
    Look for other nodes that are currently down for maintenance.

    This is advisory only; query failures are logged and the partial result
    is returned.
    """
    timeout = ctx.call_timeout(config.api_timeout)
    info = OtherNodesMaintenanceInfo(flag=config.maintenance_flag)
    try:
        info.flag_set = gateway.get_flags(config.namespace, timeout=timeout).is_set(
            config.maintenance_flag
        )
        for node in gateway.list_nodes(timeout=timeout):
            if node.name == node_name or not node.unschedulable:
                continue
            pinned = gateway.list_node_pinned_deployments(config.namespace, node.name, timeout=timeout)
            if any(d.is_scaled_down() and matches_prefix(d.name, config.prefixes) for d in pinned):
                info.nodes.append(node.name)
    except GatewayError as e:
        logger.warning(f"Could not check other nodes for maintenance: {e}")
    return info


# ==================== Progress ====================


@dataclass(frozen=True)
class PhaseProgress:
    """One progress event of a maintenance phase."""

    stage: str
    description: str
    deployment: Optional[str] = None
    timestamp: pendulum.DateTime = field(default_factory=pendulum.now)


ProgressCallback = Callable[[PhaseProgress], None]


class QueueProgressForwarder:
    """
    Progress callback that hands events to another thread.

    Events go into a bounded queue without blocking; when the reader falls
    behind and the queue is full, new events are dropped and counted.
    """

    def __init__(self, maxsize: int = DEFAULT_PROGRESS_BUFFER):
        self.queue: "queue.Queue[PhaseProgress]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, progress: PhaseProgress) -> None:
        try:
            self.queue.put_nowait(progress)
        except queue.Full:
            self.dropped += 1
            logger.debug(f"Progress queue full, dropped '{progress.stage}' event")

    def drain(self) -> List[PhaseProgress]:
        """Return every event currently queued."""
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events


def _log_wait_status(status) -> None:
    if isinstance(status, DeploymentStatus):
        logger.debug(f"Deployment {status.namespace}/{status.name}: {status}")
    else:
        logger.debug(f"Observed: {status}")


# ==================== Phase State Machines ====================


class DownPhaseState(Enum):
    """States of the down phase, in execution order."""

    INIT = "init"
    PREFLIGHT = "pre-flight"
    CORDON = "cordon"
    SET_FLAG = "set-flag"
    SCALE_DOWN_OPERATOR = "operator"
    DISCOVER = "discover"
    SCALE_DOWN_DEPLOYMENTS = "scale-down"
    COMPLETE = "complete"
    ERROR = "error"


class UpPhaseState(Enum):
    """States of the up phase, in execution order."""

    INIT = "init"
    DISCOVER = "discover"
    NOTHING_TO_DO = "nothing-to-do"
    PREFLIGHT = "pre-flight"
    UNCORDON = "uncordon"
    RESTORE_DEPLOYMENTS = "scale-up"
    SCALE_UP_OPERATOR = "operator"
    UNSET_FLAG = "unset-flag"
    COMPLETE = "complete"
    ERROR = "error"


# Progress stages that are not states of their own
STAGE_WARNING = "warning"
STAGE_QUORUM = "quorum"
STAGE_SKIP = "skip"


@dataclass
class DownPhaseOptions:
    progress_callback: Optional[ProgressCallback] = None
    wait_spec: Optional[WaitSpec] = None  # Defaults to the config's timeouts


@dataclass
class UpPhaseOptions:
    progress_callback: Optional[ProgressCallback] = None
    wait_spec: Optional[WaitSpec] = None
    # Deployments the user confirmed; when set, discovery is not repeated
    deployments: Optional[List[Deployment]] = None


@dataclass
class PhaseOutcome:
    """Result of a phase that ran to a terminal state without error."""

    node_name: str
    state: Enum
    deployments: List[Deployment] = field(default_factory=list)
    already_done: bool = False


@dataclass
class UpPlan:
    """What the up phase would restore, for presentation before confirmation."""

    node_name: str
    deployments: List[Deployment] = field(default_factory=list)
    nothing_to_do: bool = False


class _PhaseMachine(ABC):
    """Shared state handling, progress reporting and mutation helpers."""

    name = "maintenance"
    initial_state: Enum
    error_state: Enum

    def __init__(
        self,
        ctx: OperationContext,
        gateway: ClusterGateway,
        config: MaintenanceConfig,
        node_name: str,
        progress_callback: Optional[ProgressCallback],
        wait_spec: Optional[WaitSpec],
    ):
        self.ctx = ctx
        self.gateway = gateway
        self.config = config
        self.node_name = node_name
        self.progress_callback = progress_callback
        self.wait_spec = wait_spec or config.wait_spec(progress=_log_wait_status)
        self.state = self.initial_state
        self.history: List[Enum] = [self.initial_state]

    def _emit(self, stage: str, description: str, deployment: Optional[str] = None) -> None:
        logger.info(description)
        if self.progress_callback:
            self.progress_callback(PhaseProgress(stage, description, deployment))

    def _enter(self, state: Enum, description: str) -> None:
        self.state = state
        self.history.append(state)
        self._emit(state.value, description)

    def _call_timeout(self) -> float:
        return self.ctx.call_timeout(self.config.api_timeout)

    def _mutate(self, action: str, func: Callable, *args) -> None:
        self.ctx.check(action)
        try:
            func(*args, timeout=self._call_timeout())
        except GatewayError as e:
            raise MutationError(f"failed to {action}: {e}") from e

    def _scale(self, namespace: str, name: str, replicas: int) -> None:
        self._mutate(
            f"scale deployment {namespace}/{name} to {replicas}",
            self.gateway.scale_deployment,
            namespace,
            name,
            replicas,
        )

    @abstractmethod
    def _run(self) -> PhaseOutcome:
        """Run the phase steps and return the outcome of the terminal state."""

    def run(self) -> PhaseOutcome:
        started = pendulum.now()
        logger.info(f"Starting {self.name} phase for node {self.node_name}")
        try:
            outcome = self._run()
        except Exception as e:
            failed_in = self.state
            self.state = self.error_state
            self.history.append(self.error_state)
            logger.error(
                f"{self.name.capitalize()} phase for node {self.node_name} failed "
                f"during {failed_in.value}: {e}"
            )
            if self.progress_callback:
                self.progress_callback(PhaseProgress(self.error_state.value, str(e)))
            raise

        logger.success(
            f"{self.name.capitalize()} phase for node {self.node_name} finished "
            f"(started {started.diff_for_humans()})"
        )
        return outcome


class DownPhase(_PhaseMachine):
    """
    Takes a node down for maintenance.

    INIT -> PREFLIGHT -> CORDON -> SET_FLAG -> SCALE_DOWN_OPERATOR -> DISCOVER
    -> SCALE_DOWN_DEPLOYMENTS -> COMPLETE, or ERROR from any step. A node that
    is already down completes straight from INIT.
    """

    name = "down"
    initial_state = DownPhaseState.INIT
    error_state = DownPhaseState.ERROR

    def __init__(self, ctx, gateway, config, node_name, options: Optional[DownPhaseOptions] = None):
        options = options or DownPhaseOptions()
        super().__init__(ctx, gateway, config, node_name, options.progress_callback, options.wait_spec)

    def _run(self) -> PhaseOutcome:
        node = self.node_name
        namespace = self.config.namespace
        flag = self.config.maintenance_flag
        operator = self.config.operator_deployment

        if is_in_down_state(self.ctx, self.gateway, self.config, node):
            self._enter(DownPhaseState.COMPLETE, f"Node {node} is already in maintenance state")
            return PhaseOutcome(node, self.state, already_done=True)

        self._enter(DownPhaseState.PREFLIGHT, f"Running pre-flight checks for node {node}")
        results = validate_down_phase(self.ctx, self.gateway, self.config, node)
        if not results.all_passed():
            raise PreflightError(f"pre-flight checks failed for node {node}:\n{results}", results)
        others = check_other_nodes_in_maintenance(self.ctx, self.gateway, self.config, node)
        if others.has_warning():
            logger.warning(others.warning_message())
            self._emit(STAGE_WARNING, others.warning_message())

        self._enter(DownPhaseState.CORDON, f"Cordoning node {node}")
        self._mutate(f"cordon node {node}", self.gateway.cordon, node)

        self._enter(DownPhaseState.SET_FLAG, f"Setting Ceph {flag} flag")
        self._mutate(f"set {flag} flag", self.gateway.set_flag, namespace, flag)

        self._enter(DownPhaseState.SCALE_DOWN_OPERATOR, f"Scaling down {operator}")
        self._scale(namespace, operator, 0)
        wait_for_scale_down(self.ctx, self.gateway, namespace, operator, self.wait_spec)

        self._enter(DownPhaseState.DISCOVER, f"Discovering Ceph deployments on node {node}")
        deployments = order_deployments_for_down(
            discover_deployments(
                self.ctx,
                self.gateway,
                node,
                namespace,
                self.config.prefixes,
                self.config.api_timeout,
            )
        )
        warn_multi_replica_deployments(deployments)

        self._enter(
            DownPhaseState.SCALE_DOWN_DEPLOYMENTS,
            f"Scaling down {len(deployments)} deployment(s)",
        )
        for deployment in deployments:
            self._emit(
                DownPhaseState.SCALE_DOWN_DEPLOYMENTS.value,
                f"Scaling down {deployment.key}",
                deployment=deployment.key,
            )
            self._scale(deployment.namespace, deployment.name, 0)
            wait_for_scale_down(
                self.ctx, self.gateway, deployment.namespace, deployment.name, self.wait_spec
            )

        self._enter(DownPhaseState.COMPLETE, f"Node {node} is ready for maintenance")
        return PhaseOutcome(node, self.state, deployments)


class UpPhase(_PhaseMachine):
    """
    Brings a node back from maintenance.

    INIT -> DISCOVER -> (NOTHING_TO_DO) | PREFLIGHT -> UNCORDON ->
    RESTORE_DEPLOYMENTS -> SCALE_UP_OPERATOR -> UNSET_FLAG -> COMPLETE, or
    ERROR from any step. Confirmation happens outside, between plan_up_phase()
    and execution with the confirmed deployments.
    """

    name = "up"
    initial_state = UpPhaseState.INIT
    error_state = UpPhaseState.ERROR

    def __init__(self, ctx, gateway, config, node_name, options: Optional[UpPhaseOptions] = None):
        options = options or UpPhaseOptions()
        super().__init__(ctx, gateway, config, node_name, options.progress_callback, options.wait_spec)
        self.confirmed = options.deployments

    def _run(self) -> PhaseOutcome:
        node = self.node_name
        namespace = self.config.namespace
        flag = self.config.maintenance_flag
        operator = self.config.operator_deployment

        self._enter(UpPhaseState.DISCOVER, f"Discovering scaled-down deployments for node {node}")
        if self.confirmed is not None:
            deployments = list(self.confirmed)
            logger.info(f"Using {len(deployments)} confirmed deployment(s)")
        else:
            deployments = discover_scaled_down_deployments(self.ctx, self.gateway, self.config, node)

        if is_in_up_state(self.ctx, self.gateway, self.config, node, deployments):
            self._enter(UpPhaseState.NOTHING_TO_DO, f"Node {node} is already up, nothing to do")
            return PhaseOutcome(node, self.state, already_done=True)

        self._enter(UpPhaseState.PREFLIGHT, f"Running pre-flight checks for node {node}")
        results = validate_up_phase(self.ctx, self.gateway, self.config, node)
        if not results.all_passed():
            raise PreflightError(f"pre-flight checks failed for node {node}:\n{results}", results)

        self._enter(UpPhaseState.UNCORDON, f"Uncordoning node {node}")
        self._mutate(f"uncordon node {node}", self.gateway.uncordon, node)

        self._enter(
            UpPhaseState.RESTORE_DEPLOYMENTS,
            f"Restoring {len(deployments)} deployment(s)",
        )
        self._restore(deployments)

        replicas = self.config.operator_replicas
        self._enter(UpPhaseState.SCALE_UP_OPERATOR, f"Scaling up {operator} to {replicas}")
        self._scale(namespace, operator, replicas)
        wait_for_scale_up(self.ctx, self.gateway, namespace, operator, replicas, self.wait_spec)

        self._enter(UpPhaseState.UNSET_FLAG, f"Unsetting Ceph {flag} flag")
        self._mutate(f"unset {flag} flag", self.gateway.unset_flag, namespace, flag)

        self._enter(UpPhaseState.COMPLETE, f"Node {node} is back in service")
        return PhaseOutcome(node, self.state, deployments)

    def _restore(self, deployments: Sequence[Deployment]) -> None:
        ordered = order_deployments_for_up(deployments)
        if not ordered:
            self._emit(STAGE_SKIP, "No scaled-down deployments to restore")
            return

        monitors = [d for d in ordered if d.name.startswith(MON_PREFIX)]
        others = [d for d in ordered if not d.name.startswith(MON_PREFIX)]

        for deployment in monitors:
            self._restore_one(deployment)

        if monitors:
            self._emit(STAGE_QUORUM, "Waiting for Ceph monitor quorum")
            status = wait_for_monitor_quorum(
                self.ctx, self.gateway, self.config.namespace, self.wait_spec
            )
            self._emit(STAGE_QUORUM, f"Monitor quorum established: {status}")

        for deployment in others:
            self._restore_one(deployment)

    def _restore_one(self, deployment: Deployment) -> None:
        target = deployment.target_replicas
        self._emit(
            UpPhaseState.RESTORE_DEPLOYMENTS.value,
            f"Scaling up {deployment.key} to {target} replica(s)",
            deployment=deployment.key,
        )
        self._scale(deployment.namespace, deployment.name, target)
        wait_for_scale_up(
            self.ctx, self.gateway, deployment.namespace, deployment.name, target, self.wait_spec
        )


def execute_down_phase(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
    options: Optional[DownPhaseOptions] = None,
) -> PhaseOutcome:
    """
    Take a node down for maintenance.

    Args:
        ctx: Cancellation and overall deadline for the phase
        gateway: Cluster gateway
        config: Maintenance settings
        node_name: Node to take down
        options: Progress callback and wait parameters

    Returns:
        PhaseOutcome with the deployments that were scaled down

    Raises:
        MaintenanceError: The phase stopped at the failing step
    """
    return DownPhase(ctx, gateway, config, node_name, options).run()


def execute_up_phase(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
    options: Optional[UpPhaseOptions] = None,
) -> PhaseOutcome:
    """
    Bring a node back from maintenance.

    Pass the deployments shown to the user in options.deployments so that
    exactly the confirmed set is restored.

    Returns:
        PhaseOutcome with the deployments that were restored

    Raises:
        MaintenanceError: The phase stopped at the failing step
    """
    return UpPhase(ctx, gateway, config, node_name, options).run()


def plan_up_phase(
    ctx: OperationContext,
    gateway: ClusterGateway,
    config: MaintenanceConfig,
    node_name: str,
) -> UpPlan:
    """
    Work out what the up phase would restore, without changing anything.

    Raises:
        DiscoveryError: The deployments could not be listed
    """
    deployments = order_deployments_for_up(
        discover_scaled_down_deployments(ctx, gateway, config, node_name)
    )
    nothing_to_do = is_in_up_state(ctx, gateway, config, node_name, deployments)
    return UpPlan(node_name, deployments, nothing_to_do)
