#!/usr/bin/env python3
"""
Rook-Ceph Node Maintenance CLI

Takes a Kubernetes worker node that hosts Rook-Ceph daemons down for
maintenance and brings it back:

    rook-maint down worker-01     # cordon, set noout, stop the daemons on the node
    rook-maint up worker-01       # restore the daemons, uncordon, unset noout
    rook-maint status worker-01   # show whether the node is down or up

Every option can also be given as an environment variable prefixed with
ROOK_MAINT_ (e.g. ROOK_MAINT_NAMESPACE=rook-ceph).
"""

import sys
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import click
import pendulum
from loguru import logger

from k8s_gateway import ClusterGateway, Deployment, GatewayError, KubernetesGateway
from maint_engine import (
    CancellationError,
    DownPhaseOptions,
    MaintenanceConfig,
    MaintenanceError,
    OperationContext,
    PhaseOutcome,
    PhaseProgress,
    QueueProgressForwarder,
    UpPhaseOptions,
    check_other_nodes_in_maintenance,
    down_state_mismatch,
    execute_down_phase,
    execute_up_phase,
    group_deployments_by_prefix,
    list_pinned_deployments,
    plan_up_phase,
    up_state_mismatch,
    warn_multi_replica_deployments,
)

LOG_FORMAT = (
    "<cyan>{time:YYYY-MM-DDTHH:mm:ss}</cyan> | <level>{level: <8}</level> | <level>{message}</level>"
)
PROGRESS_BUFFER = 64
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


# ==================== Helpers ====================


def parse_duration_string(duration_str: str) -> pendulum.Duration:
    """Parse a duration in HH:MM:SS, MM:SS or plain seconds."""
    parts = duration_str.strip().split(":")
    try:
        if len(parts) == 3:
            return pendulum.duration(
                hours=int(parts[0]), minutes=int(parts[1]), seconds=int(parts[2])
            )
        elif len(parts) == 2:
            return pendulum.duration(minutes=int(parts[0]), seconds=int(parts[1]))
        elif len(parts) == 1:
            return pendulum.duration(seconds=int(parts[0]))
    except ValueError:
        pass
    raise ValueError(f"Invalid duration format: {duration_str}")


def configure_logging(verbose: int, log_file: Optional[str] = None) -> None:
    logger.remove()
    if verbose == 0:
        log_level = "WARNING"
    elif verbose == 1:
        log_level = "INFO"
    else:
        log_level = "DEBUG"

    logger.add(sys.stderr, level=log_level, format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level="DEBUG", format=LOG_FORMAT)


def format_progress(progress: PhaseProgress) -> str:
    if progress.stage == "complete":
        symbol = "✓"
    elif progress.stage == "error":
        symbol = "✗"
    else:
        symbol = "→"
    return f"{symbol} [{progress.timestamp.to_time_string()}] {progress.description}"


def run_phase(
    ctx: OperationContext,
    phase: Callable[[QueueProgressForwarder], PhaseOutcome],
    poll_interval: float = 0.2,
) -> PhaseOutcome:
    """
    Run a phase on a worker thread and print its progress.

    Ctrl-C cancels the phase through the context and waits for it to stop;
    a second Ctrl-C stops waiting and raises CancellationError.

    Args:
        ctx: Context of the phase
        phase: Callable running the phase with the given progress callback
        poll_interval: How often the progress queue is drained

    Returns:
        The phase outcome; the phase's exception is re-raised here
    """
    forwarder = QueueProgressForwarder(maxsize=PROGRESS_BUFFER)
    result = {}

    def worker() -> None:
        try:
            result["outcome"] = phase(forwarder)
        except Exception as e:
            result["error"] = e

    thread = threading.Thread(target=worker, name="maintenance-phase", daemon=True)
    thread.start()

    try:
        while thread.is_alive():
            for event in forwarder.drain():
                click.echo(format_progress(event))
            thread.join(timeout=poll_interval)
    except KeyboardInterrupt:
        logger.warning("Received interrupt signal, cancelling...")
        ctx.cancel()
        try:
            thread.join()
        except KeyboardInterrupt:
            raise CancellationError("interrupted again while waiting for the phase to stop") from None

    for event in forwarder.drain():
        click.echo(format_progress(event))
    if forwarder.dropped:
        logger.debug(f"{forwarder.dropped} progress event(s) dropped")

    if "error" in result:
        raise result["error"]
    return result["outcome"]


def finish_phase(ctx: OperationContext, phase: Callable[[QueueProgressForwarder], PhaseOutcome]) -> PhaseOutcome:
    """Run a phase, exiting with the right status code when it fails."""
    try:
        return run_phase(ctx, phase)
    except CancellationError as e:
        click.echo(f"✗ Cancelled: {e}", err=True)
        sys.exit(EXIT_CANCELLED)
    except MaintenanceError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(EXIT_FAILURE)


def print_deployments(deployments: List[Deployment], prefixes, show_target: bool = False) -> None:
    groups = group_deployments_by_prefix(deployments, prefixes)
    grouped = {d.key for group in groups.values() for d in group}
    rest = [d for d in deployments if d.key not in grouped]
    for prefix, group in list(groups.items()) + [("other", rest)]:
        if not group:
            continue
        click.echo(f"  {prefix}:")
        for deployment in group:
            if show_target:
                click.echo(f"    - {deployment.key} -> {deployment.target_replicas} replica(s)")
            else:
                click.echo(
                    f"    - {deployment.key} (replicas: {deployment.desired_replicas}, "
                    f"ready: {deployment.ready_replicas})"
                )


# ==================== CLI ====================


@dataclass
class CliState:
    """Objects shared by the subcommands."""

    config: Optional[MaintenanceConfig] = None
    gateway: Optional[ClusterGateway] = None
    kubeconfig: Optional[str] = None
    kube_context: Optional[str] = None

    def connect(self) -> ClusterGateway:
        if self.gateway is None:
            try:
                self.gateway = KubernetesGateway.connect(
                    kubeconfig=self.kubeconfig,
                    context=self.kube_context,
                    ceph_command_timeout=self.config.ceph_command_timeout,
                )
            except GatewayError as e:
                logger.error(f"Cannot connect to the cluster: {e}")
                sys.exit(EXIT_FAILURE)
        return self.gateway


def parse_phase_timeout(timeout_str: str) -> float:
    """Validate a --timeout value and return it in seconds, exiting on error."""
    try:
        timeout = parse_duration_string(timeout_str)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(EXIT_FAILURE)
    if timeout.total_seconds() < 1:
        logger.error("Timeout must be at least 1 second")
        sys.exit(EXIT_FAILURE)
    return timeout.total_seconds()


@click.group(context_settings={"auto_envvar_prefix": "ROOK_MAINT"})
@click.option("--kubeconfig", type=click.Path(dir_okay=False), default=None, help="Path to kubeconfig file")
@click.option("--context", "kube_context", default=None, help="Kubeconfig context to use")
@click.option(
    "--namespace",
    "-n",
    default="rook-ceph",
    help="Namespace of the Rook operator and Ceph cluster",
    show_default=True,
)
@click.option(
    "--operator-deployment",
    default="rook-ceph-operator",
    help="Name of the Rook operator deployment",
    show_default=True,
)
@click.option(
    "--operator-replicas",
    type=int,
    default=1,
    help="Replica count of the operator when running",
    show_default=True,
)
@click.option(
    "--flag",
    "maintenance_flag",
    default="noout",
    help="Ceph OSD flag held during maintenance",
    show_default=True,
)
@click.option(
    "--api-timeout",
    type=float,
    default=30,
    help="Timeout in seconds for a single API call",
    show_default=True,
)
@click.option(
    "--wait-timeout",
    type=float,
    default=300,
    help="Timeout in seconds for each deployment or quorum wait",
    show_default=True,
)
@click.option(
    "--poll-interval",
    type=float,
    default=5,
    help="Seconds between status polls while waiting",
    show_default=True,
)
@click.option(
    "--ceph-timeout",
    type=float,
    default=20,
    help="Timeout in seconds for a Ceph command in the tools pod",
    show_default=True,
)
@click.option(
    "--skip-permission-check",
    is_flag=True,
    help="Don't verify RBAC permissions during pre-flight",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (can be repeated: -v for INFO, -vv for DEBUG)",
)
@click.option("--log-file", type=click.Path(dir_okay=False), default=None, help="Also write a DEBUG log to this file")
@click.pass_context
def cli(
    click_ctx: click.Context,
    kubeconfig: Optional[str],
    kube_context: Optional[str],
    namespace: str,
    operator_deployment: str,
    operator_replicas: int,
    maintenance_flag: str,
    api_timeout: float,
    wait_timeout: float,
    poll_interval: float,
    ceph_timeout: float,
    skip_permission_check: bool,
    verbose: int,
    log_file: Optional[str],
) -> None:
    """
    Rook-Ceph Node Maintenance - safely take a storage node down and back up.

    The down phase cordons the node, sets the Ceph noout flag, scales the Rook
    operator to zero and then scales every Ceph daemon pinned to the node to
    zero, OSDs first. The up phase reverses this, restoring monitors first and
    waiting for monitor quorum before bringing the OSDs back.

    Examples:

        # Take worker-01 down without prompting
        rook-maint down worker-01 --yes

        # Bring it back, with debug logging
        rook-maint -vv up worker-01

        # Different Rook namespace
        rook-maint -n storage status worker-01
    """
    configure_logging(verbose, log_file)

    config = MaintenanceConfig(
        namespace=namespace,
        operator_deployment=operator_deployment,
        operator_replicas=operator_replicas,
        maintenance_flag=maintenance_flag,
        api_timeout=api_timeout,
        wait_timeout=wait_timeout,
        poll_interval=poll_interval,
        ceph_command_timeout=ceph_timeout,
        check_permissions=not skip_permission_check,
    )
    errors = config.validate()
    for error in errors:
        logger.error(error)
    if errors:
        sys.exit(EXIT_FAILURE)

    state = click_ctx.ensure_object(CliState)
    state.config = config
    state.kubeconfig = kubeconfig
    state.kube_context = kube_context


@cli.command()
@click.argument("node")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@click.option(
    "--timeout",
    "timeout_str",
    default="0:10:00",
    help="Overall timeout for the phase (HH:MM:SS)",
    show_default=True,
)
@click.pass_obj
def down(state: CliState, node: str, yes: bool, timeout_str: str) -> None:
    """Take NODE down for maintenance."""
    timeout = parse_phase_timeout(timeout_str)
    config = state.config
    gateway = state.connect()
    inspect_ctx = OperationContext()

    try:
        if not gateway.node_exists(node, timeout=config.api_timeout):
            logger.error(f"Node {node} not found")
            sys.exit(EXIT_FAILURE)
        pinned = list_pinned_deployments(inspect_ctx, gateway, config, node)
        reason = down_state_mismatch(inspect_ctx, gateway, config, node, pinned)
    except (GatewayError, MaintenanceError) as e:
        logger.error(f"Failed to inspect node {node}: {e}")
        sys.exit(EXIT_FAILURE)

    if reason is None:
        click.echo(f"✓ Node {node} is already prepared for maintenance, nothing to do")
        return

    click.echo(f"Down phase for node {node}:")
    click.echo(f"  1. Cordon node {node}")
    click.echo(f"  2. Set Ceph {config.maintenance_flag} flag")
    click.echo(f"  3. Scale {config.namespace}/{config.operator_deployment} to 0")
    click.echo(f"  4. Scale down {len(pinned)} deployment(s) pinned to the node:")
    print_deployments(pinned, config.prefixes)
    warn_multi_replica_deployments(pinned)

    others = check_other_nodes_in_maintenance(inspect_ctx, gateway, config, node)
    if others.has_warning():
        click.echo(f"⚠ {others.warning_message()}")

    if not yes and not click.confirm("Proceed?", default=False):
        click.echo("Operation cancelled")
        return

    # The phase deadline starts once the operator has confirmed
    ctx = OperationContext(timeout=timeout)
    outcome = finish_phase(
        ctx,
        lambda progress: execute_down_phase(
            ctx, gateway, config, node, DownPhaseOptions(progress_callback=progress)
        ),
    )
    click.echo(f"✓ Node {node} is down for maintenance ({len(outcome.deployments)} deployment(s) scaled down)")


@cli.command()
@click.argument("node")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@click.option(
    "--timeout",
    "timeout_str",
    default="0:15:00",
    help="Overall timeout for the phase (HH:MM:SS)",
    show_default=True,
)
@click.pass_obj
def up(state: CliState, node: str, yes: bool, timeout_str: str) -> None:
    """Bring NODE back from maintenance."""
    timeout = parse_phase_timeout(timeout_str)
    config = state.config
    gateway = state.connect()
    inspect_ctx = OperationContext()

    try:
        if not gateway.node_exists(node, timeout=config.api_timeout):
            logger.error(f"Node {node} not found")
            sys.exit(EXIT_FAILURE)
        plan = plan_up_phase(inspect_ctx, gateway, config, node)
    except (GatewayError, MaintenanceError) as e:
        logger.error(f"Failed to inspect node {node}: {e}")
        sys.exit(EXIT_FAILURE)

    if plan.nothing_to_do:
        click.echo(f"✓ Node {node} is already up, nothing to do")
        return

    click.echo(f"Up phase for node {node}:")
    click.echo(f"  1. Uncordon node {node}")
    click.echo(f"  2. Restore {len(plan.deployments)} deployment(s), monitors first:")
    print_deployments(plan.deployments, config.prefixes, show_target=True)
    click.echo(f"  3. Scale {config.namespace}/{config.operator_deployment} to {config.operator_replicas}")
    click.echo(f"  4. Unset Ceph {config.maintenance_flag} flag")

    if not yes and not click.confirm("Proceed?", default=False):
        click.echo("Operation cancelled")
        return

    # The phase deadline starts once the operator has confirmed
    ctx = OperationContext(timeout=timeout)
    outcome = finish_phase(
        ctx,
        lambda progress: execute_up_phase(
            ctx,
            gateway,
            config,
            node,
            UpPhaseOptions(progress_callback=progress, deployments=plan.deployments),
        ),
    )
    click.echo(f"✓ Node {node} is back in service ({len(outcome.deployments)} deployment(s) restored)")


@cli.command()
@click.argument("node")
@click.pass_obj
def status(state: CliState, node: str) -> None:
    """Show the maintenance state of NODE."""
    ctx = OperationContext()
    config = state.config
    gateway = state.connect()

    try:
        node_status = gateway.get_node_status(node, timeout=config.api_timeout)
        pinned = list_pinned_deployments(ctx, gateway, config, node)
        flags = gateway.get_flags(config.namespace, timeout=config.api_timeout)
        down_reason = down_state_mismatch(ctx, gateway, config, node, pinned)
        up_reason = up_state_mismatch(
            ctx, gateway, config, node, [d for d in pinned if d.is_scaled_down()]
        )
    except (GatewayError, MaintenanceError) as e:
        logger.error(f"Failed to inspect node {node}: {e}")
        sys.exit(EXIT_FAILURE)

    if down_reason is None:
        summary = "down for maintenance"
    elif up_reason is None:
        summary = "up"
    else:
        summary = "partially in maintenance"

    click.echo(f"Node {node}: {summary}")
    click.echo(f"  Cordoned: {'yes' if node_status.unschedulable else 'no'}")
    click.echo(f"  Ready: {'yes' if node_status.ready else 'no'}")
    click.echo(f"  Ceph flags: {', '.join(flags.active_flags()) or 'none'}")
    click.echo(f"  Pinned deployments: {len(pinned)}")
    print_deployments(pinned, config.prefixes)
    if down_reason and up_reason:
        click.echo(f"  Not down: {down_reason}")
        click.echo(f"  Not up: {up_reason}")

    try:
        quorum = gateway.get_monitor_status(config.namespace, timeout=config.api_timeout)
        click.echo(f"  Quorum: {quorum}")
    except GatewayError as e:
        logger.warning(f"Could not read monitor quorum: {e}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
