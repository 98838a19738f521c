"""
Cluster Gateway for Rook-Ceph Node Maintenance

This module holds everything the maintenance engine needs to talk to a cluster:
1. Value types returned by the cluster (deployments, pods, Ceph flags, quorum)
2. ClusterGateway, the capability interface the engine is written against
3. KubernetesGateway, the implementation backed by the kubernetes client

Ceph commands are executed inside a ready rook-ceph-tools pod, so the gateway
only needs Kubernetes API access (including pods/exec).
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from loguru import logger
from urllib3.exceptions import HTTPError
from websocket import WebSocketException

HOSTNAME_LABEL = "kubernetes.io/hostname"
TOOLS_LABEL_SELECTOR = "app=rook-ceph-tools"
ROOK_NAME_PREFIX = "rook-ceph-"

HEALTH_OK = "HEALTH_OK"
HEALTH_WARN = "HEALTH_WARN"
HEALTH_ERR = "HEALTH_ERR"

# Order used when listing active flags
KNOWN_CEPH_FLAGS = (
    "noout",
    "noin",
    "nodown",
    "noup",
    "norebalance",
    "norecover",
    "noscrub",
    "nodeep-scrub",
    "nobackfill",
    "pause",
)
MAINTENANCE_FLAGS = frozenset({"noout", "noin", "nodown", "noup"})
RECOVERY_FLAGS = frozenset({"norebalance", "norecover", "nobackfill"})
SCRUB_FLAGS = frozenset({"noscrub", "nodeep-scrub"})


# ==================== Errors ====================


class GatewayError(Exception):
    """A cluster API call or Ceph command failed."""


class NotFoundError(GatewayError):
    """The requested cluster object does not exist."""


# ==================== Data Classes ====================


@dataclass
class Deployment:
    """A deployment as seen at discovery time."""

    namespace: str
    name: str
    replicas: Optional[int] = None  # Declared spec.replicas; None when unset
    ready_replicas: int = 0
    node_name: Optional[str] = None  # Node the deployment is pinned to
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def desired_replicas(self) -> int:
        """Declared replica count, with Kubernetes' default of 1 when unset."""
        return 1 if self.replicas is None else self.replicas

    @property
    def target_replicas(self) -> int:
        """Replica count to restore to: the declared count if non-zero, else 1."""
        return self.replicas if self.replicas else 1

    def is_scaled_down(self) -> bool:
        return self.desired_replicas == 0

    @property
    def component(self) -> str:
        """Rook daemon type, e.g. "osd" for rook-ceph-osd-0."""
        if not self.name.startswith(ROOK_NAME_PREFIX):
            return "unknown"
        return self.name[len(ROOK_NAME_PREFIX) :].split("-")[0]

    def __str__(self) -> str:
        return self.key


@dataclass
class DeploymentStatus:
    """Observed replica counts of a deployment at one point in time."""

    namespace: str
    name: str
    replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    updated_replicas: int = 0

    def __str__(self) -> str:
        return (
            f"replicas={self.replicas}, ready={self.ready_replicas}, "
            f"available={self.available_replicas}, updated={self.updated_replicas}"
        )


@dataclass
class NodeStatus:
    name: str
    unschedulable: bool = False
    ready: bool = False


@dataclass
class OwnerReference:
    kind: str
    name: str
    controller: bool = False


@dataclass
class Pod:
    namespace: str
    name: str
    node_name: Optional[str] = None
    owner_references: List[OwnerReference] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class OwnerChain:
    """
    Controller chain of a pod, resolved to its top-level owner.

    kind is the top-level owner's kind ("Deployment", "StatefulSet",
    "DaemonSet", ...) or an empty string for pods without a controller.
    """

    namespace: str
    pod_name: str
    kind: str = ""
    name: str = ""
    replica_set: Optional[str] = None

    @property
    def deployment(self) -> Optional[str]:
        """Name of the owning deployment, if the pod belongs to one."""
        return self.name if self.kind == "Deployment" else None


def _load_json_object(output: str) -> dict:
    """Parse Ceph JSON output that must be an object."""
    data = json.loads(output)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


@dataclass
class CephFlags:
    """Cluster-wide OSD map flags."""

    flags: FrozenSet[str] = frozenset()

    def is_set(self, flag: str) -> bool:
        return flag in self.flags

    @property
    def noout(self) -> bool:
        return self.is_set("noout")

    def has_maintenance_flags(self) -> bool:
        return bool(self.flags & MAINTENANCE_FLAGS)

    def has_recovery_flags(self) -> bool:
        return bool(self.flags & RECOVERY_FLAGS)

    def has_scrub_flags(self) -> bool:
        return bool(self.flags & SCRUB_FLAGS)

    def active_flags(self) -> List[str]:
        """Active flags, known flags first in canonical order."""
        known = [flag for flag in KNOWN_CEPH_FLAGS if flag in self.flags]
        return known + sorted(self.flags - set(KNOWN_CEPH_FLAGS))

    @classmethod
    def from_flags_string(cls, flags_str: str) -> "CephFlags":
        """Parse the comma-separated flags field of the OSD map."""
        flags = {flag.strip() for flag in (flags_str or "").split(",")}
        return cls(flags=frozenset(flag for flag in flags if flag))

    @classmethod
    def from_osd_dump(cls, output: str) -> "CephFlags":
        """
        Parse the output of 'ceph osd dump --format json'.

        Raises:
            ValueError: If the output is not a valid JSON object
        """
        flags = _load_json_object(output).get("flags") or ""
        if not isinstance(flags, str):
            raise ValueError(f"unexpected flags field: {flags!r}")
        return cls.from_flags_string(flags)


@dataclass
class MonitorQuorumStatus:
    """Ceph monitor quorum as reported by 'ceph quorum_status'."""

    total_count: int = 0
    in_quorum: int = 0
    quorum_names: List[str] = field(default_factory=list)
    out_of_quorum: List[str] = field(default_factory=list)
    leader: str = ""
    election_epoch: int = 0

    def has_quorum(self) -> bool:
        """More than half of the monitors agree."""
        return self.total_count > 0 and self.in_quorum > self.total_count / 2

    def is_healthy(self) -> bool:
        """Every monitor is in quorum."""
        return self.total_count > 0 and self.in_quorum == self.total_count

    def __str__(self) -> str:
        text = (
            f"monitors in quorum: {self.in_quorum}/{self.total_count} "
            f"({', '.join(self.quorum_names)})"
        )
        if self.out_of_quorum:
            text += f", out of quorum: {', '.join(self.out_of_quorum)}"
        return text

    @classmethod
    def from_quorum_status(cls, output: str) -> "MonitorQuorumStatus":
        """
        Parse the output of 'ceph quorum_status --format json'.

        Raises:
            ValueError: If the output is not a valid JSON object
        """
        data = _load_json_object(output)
        quorum_names = [str(name) for name in data.get("quorum_names") or []]
        members = [
            mon.get("name", "")
            for mon in _section(data, "monmap").get("mons") or []
            if isinstance(mon, dict)
        ]
        if not members:
            members = list(quorum_names)

        return cls(
            total_count=len(members),
            in_quorum=len(quorum_names),
            quorum_names=quorum_names,
            out_of_quorum=[name for name in members if name not in quorum_names],
            leader=data.get("quorum_leader_name", ""),
            election_epoch=data.get("election_epoch", 0),
        )


@dataclass
class CephHealth:
    """Overall cluster health from 'ceph status'."""

    status: str = ""
    num_osds: int = 0
    num_up_osds: int = 0
    num_in_osds: int = 0

    def is_healthy(self) -> bool:
        return self.status == HEALTH_OK

    def is_error(self) -> bool:
        return self.status == HEALTH_ERR

    def __str__(self) -> str:
        return f"{self.status} (osds: {self.num_up_osds} up, {self.num_in_osds} in, {self.num_osds} total)"

    @classmethod
    def from_status(cls, output: str) -> "CephHealth":
        """
        Parse the output of 'ceph status --format json'.

        Raises:
            ValueError: If the output is not a valid JSON object
        """
        data = _load_json_object(output)
        osdmap = _section(data, "osdmap")
        # Older releases nest the counters one level deeper
        osdmap = _section(osdmap, "osdmap") or osdmap
        return cls(
            status=_section(data, "health").get("status", ""),
            num_osds=osdmap.get("num_osds", 0),
            num_up_osds=osdmap.get("num_up_osds", 0),
            num_in_osds=osdmap.get("num_in_osds", 0),
        )


# ==================== Kubernetes Object Conversion ====================


def deployment_node_pin(obj: client.V1Deployment) -> Optional[str]:
    """
    Find the node a deployment's pods are pinned to.

    Rook pins node daemons with a hostname nodeSelector; a required node
    affinity on the hostname label is accepted as well.

    Args:
        obj: Deployment object from the Kubernetes API

    Returns:
        Node name or None if the deployment is not pinned
    """
    template = obj.spec.template if obj.spec else None
    pod_spec = template.spec if template else None
    if pod_spec is None:
        return None

    node_selector = pod_spec.node_selector or {}
    if node_selector.get(HOSTNAME_LABEL):
        return node_selector[HOSTNAME_LABEL]

    affinity = pod_spec.affinity
    node_affinity = affinity.node_affinity if affinity else None
    required = (
        node_affinity.required_during_scheduling_ignored_during_execution
        if node_affinity
        else None
    )
    if required is None:
        return None

    for term in required.node_selector_terms or []:
        for expression in term.match_expressions or []:
            if (
                expression.key == HOSTNAME_LABEL
                and expression.operator == "In"
                and expression.values
            ):
                return expression.values[0]
    return None


def deployment_from_k8s(obj: client.V1Deployment) -> Deployment:
    status = obj.status
    return Deployment(
        namespace=obj.metadata.namespace,
        name=obj.metadata.name,
        replicas=obj.spec.replicas if obj.spec else None,
        ready_replicas=(status.ready_replicas or 0) if status else 0,
        node_name=deployment_node_pin(obj),
        labels=dict(obj.metadata.labels or {}),
    )


def deployment_status_from_k8s(obj: client.V1Deployment) -> DeploymentStatus:
    status = obj.status
    if status is None:
        return DeploymentStatus(namespace=obj.metadata.namespace, name=obj.metadata.name)
    return DeploymentStatus(
        namespace=obj.metadata.namespace,
        name=obj.metadata.name,
        replicas=status.replicas or 0,
        ready_replicas=status.ready_replicas or 0,
        available_replicas=status.available_replicas or 0,
        updated_replicas=status.updated_replicas or 0,
    )


def node_status_from_k8s(obj: client.V1Node) -> NodeStatus:
    ready = False
    conditions = obj.status.conditions if obj.status else None
    for condition in conditions or []:
        if condition.type == "Ready":
            ready = condition.status == "True"
    return NodeStatus(
        name=obj.metadata.name,
        unschedulable=bool(obj.spec.unschedulable) if obj.spec else False,
        ready=ready,
    )


def pod_from_k8s(obj: client.V1Pod) -> Pod:
    return Pod(
        namespace=obj.metadata.namespace,
        name=obj.metadata.name,
        node_name=obj.spec.node_name if obj.spec else None,
        owner_references=_owner_references(obj.metadata),
    )


def _owner_references(metadata: client.V1ObjectMeta) -> List[OwnerReference]:
    return [
        OwnerReference(kind=ref.kind, name=ref.name, controller=bool(ref.controller))
        for ref in metadata.owner_references or []
    ]


def _controller_reference(references: List[OwnerReference]) -> Optional[OwnerReference]:
    for ref in references:
        if ref.controller:
            return ref
    return None


def _pod_is_ready(obj: client.V1Pod) -> bool:
    if obj.status is None or obj.status.phase != "Running":
        return False
    for condition in obj.status.conditions or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


# ==================== Cluster Gateway Interface ====================


class ClusterGateway(ABC):
    """
    Capabilities the maintenance engine needs from the cluster.

    Every method takes a per-call timeout in seconds and raises GatewayError
    (NotFoundError for missing objects) when the call fails.
    """

    @abstractmethod
    def node_exists(self, name: str, timeout: Optional[float] = None) -> bool:
        ...

    @abstractmethod
    def get_node_status(self, name: str, timeout: Optional[float] = None) -> NodeStatus:
        ...

    @abstractmethod
    def list_nodes(self, timeout: Optional[float] = None) -> List[NodeStatus]:
        ...

    @abstractmethod
    def cordon(self, name: str, timeout: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def uncordon(self, name: str, timeout: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def namespace_exists(self, namespace: str, timeout: Optional[float] = None) -> bool:
        ...

    @abstractmethod
    def scale_deployment(
        self, namespace: str, name: str, replicas: int, timeout: Optional[float] = None
    ) -> None:
        ...

    @abstractmethod
    def get_deployment(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Deployment:
        ...

    @abstractmethod
    def get_deployment_status(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> DeploymentStatus:
        ...

    @abstractmethod
    def list_node_pinned_deployments(
        self, namespace: str, node_name: str, timeout: Optional[float] = None
    ) -> List[Deployment]:
        ...

    @abstractmethod
    def list_pods_on_node(self, node_name: str, timeout: Optional[float] = None) -> List[Pod]:
        ...

    @abstractmethod
    def get_owner_chain(self, pod: Pod, timeout: Optional[float] = None) -> OwnerChain:
        ...

    @abstractmethod
    def set_flag(self, namespace: str, flag: str, timeout: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def unset_flag(self, namespace: str, flag: str, timeout: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def get_flags(self, namespace: str, timeout: Optional[float] = None) -> CephFlags:
        ...

    @abstractmethod
    def get_monitor_status(
        self, namespace: str, timeout: Optional[float] = None
    ) -> MonitorQuorumStatus:
        ...

    @abstractmethod
    def get_ceph_status(self, namespace: str, timeout: Optional[float] = None) -> CephHealth:
        ...

    @abstractmethod
    def check_permission(
        self,
        verb: str,
        resource: str,
        namespace: Optional[str] = None,
        group: str = "",
        subresource: str = "",
        timeout: Optional[float] = None,
    ) -> bool:
        ...


# ==================== Kubernetes Gateway ====================


class KubernetesGateway(ClusterGateway):
    """ClusterGateway backed by the official kubernetes client."""

    def __init__(
        self,
        core_v1: Optional[client.CoreV1Api] = None,
        apps_v1: Optional[client.AppsV1Api] = None,
        auth_v1: Optional[client.AuthorizationV1Api] = None,
        ceph_command_timeout: float = 20.0,
    ):
        """
        Initialize the gateway.

        Args:
            core_v1: CoreV1Api instance (created from the loaded config if omitted)
            apps_v1: AppsV1Api instance
            auth_v1: AuthorizationV1Api instance
            ceph_command_timeout: Upper bound in seconds for a single Ceph command
        """
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.apps_v1 = apps_v1 or client.AppsV1Api()
        self.auth_v1 = auth_v1 or client.AuthorizationV1Api()
        self.ceph_command_timeout = ceph_command_timeout

    @classmethod
    def connect(
        cls,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        ceph_command_timeout: float = 20.0,
    ) -> "KubernetesGateway":
        """
        Load cluster credentials and build a gateway.

        The in-cluster service account is used when running inside a pod and
        no kubeconfig or context was requested explicitly.
        """
        try:
            if kubeconfig is None and context is None:
                try:
                    config.load_incluster_config()
                    logger.debug("Using in-cluster Kubernetes configuration")
                    return cls(ceph_command_timeout=ceph_command_timeout)
                except config.ConfigException:
                    logger.debug("Not running in a cluster, falling back to kubeconfig")
            config.load_kube_config(config_file=kubeconfig, context=context)
        except (config.ConfigException, OSError) as e:
            raise GatewayError(f"failed to load Kubernetes configuration: {e}") from e

        logger.debug(f"Using kubeconfig {kubeconfig or '(default)'}, context {context or '(current)'}")
        return cls(ceph_command_timeout=ceph_command_timeout)

    def _request(self, action: str, func, *args, timeout: Optional[float] = None, **kwargs):
        """Call a kubernetes API method, translating failures to GatewayError."""
        if timeout is not None:
            kwargs["_request_timeout"] = timeout
        try:
            return func(*args, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"{action}: not found") from e
            raise GatewayError(f"{action}: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise GatewayError(f"{action}: {e}") from e

    # ---------- Nodes ----------

    def node_exists(self, name: str, timeout: Optional[float] = None) -> bool:
        try:
            self._request(f"get node {name}", self.core_v1.read_node, name, timeout=timeout)
        except NotFoundError:
            return False
        return True

    def get_node_status(self, name: str, timeout: Optional[float] = None) -> NodeStatus:
        node = self._request(f"get node {name}", self.core_v1.read_node, name, timeout=timeout)
        return node_status_from_k8s(node)

    def list_nodes(self, timeout: Optional[float] = None) -> List[NodeStatus]:
        nodes = self._request("list nodes", self.core_v1.list_node, timeout=timeout)
        return [node_status_from_k8s(node) for node in nodes.items]

    def _set_unschedulable(self, name: str, unschedulable: bool, timeout: Optional[float]) -> None:
        action = "cordon" if unschedulable else "uncordon"
        status = self.get_node_status(name, timeout=timeout)
        if status.unschedulable == unschedulable:
            logger.debug(f"Node {name} already {action}ed")
            return

        self._request(
            f"{action} node {name}",
            self.core_v1.patch_node,
            name,
            {"spec": {"unschedulable": unschedulable}},
            timeout=timeout,
        )
        logger.info(f"Node {name} {action}ed")

    def cordon(self, name: str, timeout: Optional[float] = None) -> None:
        self._set_unschedulable(name, True, timeout)

    def uncordon(self, name: str, timeout: Optional[float] = None) -> None:
        self._set_unschedulable(name, False, timeout)

    def namespace_exists(self, namespace: str, timeout: Optional[float] = None) -> bool:
        try:
            self._request(
                f"get namespace {namespace}",
                self.core_v1.read_namespace,
                namespace,
                timeout=timeout,
            )
        except NotFoundError:
            return False
        return True

    # ---------- Deployments ----------

    def scale_deployment(
        self, namespace: str, name: str, replicas: int, timeout: Optional[float] = None
    ) -> None:
        action = f"scale deployment {namespace}/{name}"
        scale = self._request(
            action,
            self.apps_v1.read_namespaced_deployment_scale,
            name,
            namespace,
            timeout=timeout,
        )
        scale.spec.replicas = replicas
        self._request(
            action,
            self.apps_v1.replace_namespaced_deployment_scale,
            name,
            namespace,
            scale,
            timeout=timeout,
        )
        logger.info(f"Scaled deployment {namespace}/{name} to {replicas} replica(s)")

    def get_deployment(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Deployment:
        obj = self._request(
            f"get deployment {namespace}/{name}",
            self.apps_v1.read_namespaced_deployment,
            name,
            namespace,
            timeout=timeout,
        )
        return deployment_from_k8s(obj)

    def get_deployment_status(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> DeploymentStatus:
        obj = self._request(
            f"get deployment {namespace}/{name} status",
            self.apps_v1.read_namespaced_deployment,
            name,
            namespace,
            timeout=timeout,
        )
        return deployment_status_from_k8s(obj)

    def list_node_pinned_deployments(
        self, namespace: str, node_name: str, timeout: Optional[float] = None
    ) -> List[Deployment]:
        objs = self._request(
            f"list deployments in {namespace}",
            self.apps_v1.list_namespaced_deployment,
            namespace,
            timeout=timeout,
        )
        pinned = []
        for obj in objs.items:
            deployment = deployment_from_k8s(obj)
            if deployment.node_name == node_name:
                pinned.append(deployment)
        logger.debug(f"Found {len(pinned)} deployment(s) pinned to node {node_name}")
        return pinned

    # ---------- Pods ----------

    def list_pods_on_node(self, node_name: str, timeout: Optional[float] = None) -> List[Pod]:
        pods = self._request(
            f"list pods on node {node_name}",
            self.core_v1.list_pod_for_all_namespaces,
            field_selector=f"spec.nodeName={node_name}",
            timeout=timeout,
        )
        return [pod_from_k8s(pod) for pod in pods.items]

    def get_owner_chain(self, pod: Pod, timeout: Optional[float] = None) -> OwnerChain:
        """
        Follow controller owner references from a pod to its top-level owner.

        Only controller references are followed; a ReplicaSet is resolved one
        level further to the Deployment that controls it.
        """
        chain = OwnerChain(namespace=pod.namespace, pod_name=pod.name)
        owner = _controller_reference(pod.owner_references)
        if owner is None:
            return chain

        chain.kind = owner.kind
        chain.name = owner.name
        if owner.kind != "ReplicaSet":
            return chain

        replica_set = self._request(
            f"get replicaset {pod.namespace}/{owner.name}",
            self.apps_v1.read_namespaced_replica_set,
            owner.name,
            pod.namespace,
            timeout=timeout,
        )
        rs_owner = _controller_reference(_owner_references(replica_set.metadata))
        if rs_owner is not None and rs_owner.kind == "Deployment":
            chain.replica_set = owner.name
            chain.kind = rs_owner.kind
            chain.name = rs_owner.name
        return chain

    # ---------- Ceph ----------

    def _find_tools_pod(self, namespace: str, timeout: Optional[float]) -> str:
        pods = self._request(
            f"list rook-ceph-tools pods in {namespace}",
            self.core_v1.list_namespaced_pod,
            namespace,
            label_selector=TOOLS_LABEL_SELECTOR,
            timeout=timeout,
        )
        for pod in pods.items:
            if _pod_is_ready(pod):
                return pod.metadata.name
        raise GatewayError(f"no ready rook-ceph-tools pod found in namespace {namespace}")

    def run_ceph_command(
        self, namespace: str, args: List[str], timeout: Optional[float] = None
    ) -> str:
        """
        Run a ceph command in the rook-ceph-tools pod and return its stdout.

        Args:
            namespace: Namespace of the Rook cluster
            args: Arguments to the ceph binary
            timeout: Per-call timeout, capped at ceph_command_timeout

        Returns:
            Standard output of the command
        """
        if timeout is None:
            timeout = self.ceph_command_timeout
        else:
            timeout = min(timeout, self.ceph_command_timeout)

        pod_name = self._find_tools_pod(namespace, timeout)
        command = ["ceph"] + list(args)
        action = f"run '{' '.join(command)}' in {namespace}/{pod_name}"
        logger.debug(f"Running command: {' '.join(command)} (pod {namespace}/{pod_name})")

        try:
            resp = stream(
                self.core_v1.connect_get_namespaced_pod_exec,
                pod_name,
                namespace,
                command=command,
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
                _request_timeout=timeout,
            )
            resp.run_forever(timeout=timeout)
            if resp.is_open():
                resp.close()
                raise GatewayError(f"{action}: timed out after {timeout:.0f}s")
            stdout = resp.read_stdout()
            stderr = resp.read_stderr()
            try:
                returncode = resp.returncode
            except (KeyError, TypeError, ValueError, yaml.YAMLError) as e:
                # Empty or malformed error channel, e.g. the tools pod went away mid-command
                raise GatewayError(f"{action}: could not read exit status: {e!r}") from e
        except ApiException as e:
            raise GatewayError(f"{action}: {e.status} {e.reason}") from e
        except (HTTPError, WebSocketException, OSError) as e:
            raise GatewayError(f"{action}: {e}") from e

        if returncode != 0:
            raise GatewayError(f"{action}: exit code {returncode}: {stderr.strip()}")
        return stdout

    def set_flag(self, namespace: str, flag: str, timeout: Optional[float] = None) -> None:
        self.run_ceph_command(namespace, ["osd", "set", flag], timeout=timeout)
        logger.info(f"Ceph flag {flag} set")

    def unset_flag(self, namespace: str, flag: str, timeout: Optional[float] = None) -> None:
        self.run_ceph_command(namespace, ["osd", "unset", flag], timeout=timeout)
        logger.info(f"Ceph flag {flag} unset")

    def get_flags(self, namespace: str, timeout: Optional[float] = None) -> CephFlags:
        output = self.run_ceph_command(
            namespace, ["osd", "dump", "--format", "json"], timeout=timeout
        )
        try:
            return CephFlags.from_osd_dump(output)
        except (ValueError, TypeError) as e:
            raise GatewayError(f"failed to parse ceph osd dump output: {e}") from e

    def get_monitor_status(
        self, namespace: str, timeout: Optional[float] = None
    ) -> MonitorQuorumStatus:
        output = self.run_ceph_command(
            namespace, ["quorum_status", "--format", "json"], timeout=timeout
        )
        try:
            return MonitorQuorumStatus.from_quorum_status(output)
        except (ValueError, TypeError) as e:
            raise GatewayError(f"failed to parse ceph quorum_status output: {e}") from e

    def get_ceph_status(self, namespace: str, timeout: Optional[float] = None) -> CephHealth:
        output = self.run_ceph_command(namespace, ["status", "--format", "json"], timeout=timeout)
        try:
            return CephHealth.from_status(output)
        except (ValueError, TypeError) as e:
            raise GatewayError(f"failed to parse ceph status output: {e}") from e

    # ---------- RBAC ----------

    def check_permission(
        self,
        verb: str,
        resource: str,
        namespace: Optional[str] = None,
        group: str = "",
        subresource: str = "",
        timeout: Optional[float] = None,
    ) -> bool:
        review = client.V1SelfSubjectAccessReview(
            spec=client.V1SelfSubjectAccessReviewSpec(
                resource_attributes=client.V1ResourceAttributes(
                    verb=verb,
                    resource=resource,
                    group=group,
                    namespace=namespace,
                    subresource=subresource or None,
                )
            )
        )
        result = self._request(
            f"check permission {verb} {resource}",
            self.auth_v1.create_self_subject_access_review,
            review,
            timeout=timeout,
        )
        return bool(result.status and result.status.allowed)
