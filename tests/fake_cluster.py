"""
In-memory cluster for manager tests.

Implements PodOperations and DeploymentOperations against plain dicts and
emulates the bits of the Deployment controller the managers rely on:

- scaling a deployment up creates pods from its template
- scaling down removes unclaimed pods first, then not-ready ones, then the newest
- a deleted pod is replaced while the replica count still demands it
- every write bumps resourceVersion; a write carrying a stale version raises ConflictError

Every public operation is counted in ``calls`` so tests can assert that a code
path never reached the cluster.
"""

import asyncio
import copy
import itertools
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple, Union

from kubernetes import client

from compute_orchestrator.errors import ConflictError, NotFoundError
from compute_orchestrator.kubernetes.helpers import is_pod_ready
from compute_orchestrator.kubernetes.operations import DeploymentOperations, PodOperations

Key = Tuple[str, str]


def parse_selector(selector: Optional[Union[Mapping[str, str], str]]) -> List[Tuple[str, str, Optional[str]]]:
    """Parse equality-based selectors: ``k=v``, ``k!=v``, ``k`` and ``!k``."""
    if not selector:
        return []
    if not isinstance(selector, str):
        return [("=", k, v) for k, v in selector.items()]

    requirements = []
    for term in selector.split(","):
        term = term.strip()
        if not term:
            continue
        if "!=" in term:
            key, value = term.split("!=", 1)
            requirements.append(("!=", key.strip(), value.strip()))
        elif "=" in term:
            key, value = term.split("=", 1)
            requirements.append(("=", key.strip().rstrip("="), value.strip()))
        elif term.startswith("!"):
            requirements.append(("!", term[1:].strip(), None))
        else:
            requirements.append(("exists", term, None))
    return requirements


def matches(labels: Optional[Mapping[str, str]], selector) -> bool:
    labels = labels or {}
    for op, key, value in parse_selector(selector):
        if op == "=" and labels.get(key) != value:
            return False
        if op == "!=" and labels.get(key) == value:
            return False
        if op == "!" and key in labels:
            return False
        if op == "exists" and key not in labels:
            return False
    return True


class FakeCluster(PodOperations, DeploymentOperations):
    """Single-process stand-in for the Kubernetes API plus the Deployment controller."""

    def __init__(
        self,
        auto_provision: bool = True,
        auto_ready: bool = True,
        default_timeout: float = 1.0,
        pod_ready_poll_interval: float = 0.01,
    ):
        self.auto_provision = auto_provision
        self.auto_ready = auto_ready
        self.default_timeout = default_timeout
        self.pod_ready_poll_interval = pod_ready_poll_interval

        self.pods: Dict[Key, client.V1Pod] = {}
        self.deployments: Dict[Key, client.V1Deployment] = {}
        self.calls: Counter = Counter()

        self._versions = itertools.count(1)
        self._pod_suffix = itertools.count(1)
        self._ip_suffix = itertools.count(10)
        self._failures: Dict[str, List[Exception]] = defaultdict(list)

    # =========================================================================
    # Test controls
    # =========================================================================

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def fail(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._failures[operation].extend([error] * times)

    def inject_conflicts(self, operation: str, times: int = 1) -> None:
        self.fail(operation, ConflictError(operation, "default", status=409, reason="Conflict"), times)

    def set_pod_ready(self, name: str, namespace: str = "default", ready: bool = True) -> None:
        pod = self.pods.get((namespace, name))
        if pod is None:
            return
        self._mark_ready(pod, ready)
        self._bump(pod)
        self._refresh_deployment_status(namespace)

    def schedule_pod_ready(self, name: str, delay: float, namespace: str = "default") -> None:
        asyncio.get_running_loop().call_later(delay, self.set_pod_ready, name, namespace)

    def replicas(self, deployment_name: str, namespace: str = "default") -> int:
        return self.deployments[(namespace, deployment_name)].spec.replicas or 0

    def pod_names(self, namespace: str = "default") -> List[str]:
        return [name for ns, name in self.pods if ns == namespace]

    def add_pod(self, pod: client.V1Pod, namespace: str = "default") -> client.V1Pod:
        """Insert a pod directly, bypassing call counting."""
        pod = copy.deepcopy(pod)
        pod.metadata.namespace = namespace
        if pod.metadata.creation_timestamp is None:
            pod.metadata.creation_timestamp = datetime.now(timezone.utc)
        self._bump(pod)
        self.pods[(namespace, pod.metadata.name)] = pod
        return copy.deepcopy(pod)

    def reconcile(self, namespace: str = "default") -> None:
        """Run the controller once (it also runs after every write)."""
        self._reconcile(namespace)

    # =========================================================================
    # Pod operations
    # =========================================================================

    async def get_pod(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> client.V1Pod:
        self._enter("get_pod")
        pod = self.pods.get((namespace, name))
        if pod is None:
            raise NotFoundError("pod", name, namespace)
        return copy.deepcopy(pod)

    async def list_pods(self, namespace: str, label_selector=None, *, timeout: Optional[float] = None) -> List[client.V1Pod]:
        self._enter("list_pods")
        return [
            copy.deepcopy(pod) for (ns, _), pod in self.pods.items()
            if ns == namespace and matches(pod.metadata.labels, label_selector)
        ]

    async def create_pod(self, namespace: str, pod: client.V1Pod, *, timeout: Optional[float] = None) -> client.V1Pod:
        self._enter("create_pod")
        key = (namespace, pod.metadata.name)
        if key in self.pods:
            raise ConflictError("create pod", namespace, pod.metadata.name, 409, "AlreadyExists")
        return self.add_pod(pod, namespace)

    async def update_pod(self, namespace: str, pod: client.V1Pod, *, timeout: Optional[float] = None) -> client.V1Pod:
        self._enter("update_pod")
        key = (namespace, pod.metadata.name)
        current = self.pods.get(key)
        if current is None:
            raise NotFoundError("pod", pod.metadata.name, namespace)
        self._check_version("update pod", namespace, current, pod)

        stored = copy.deepcopy(pod)
        stored.metadata.namespace = namespace
        stored.metadata.creation_timestamp = current.metadata.creation_timestamp
        self._bump(stored)
        self.pods[key] = stored
        return copy.deepcopy(stored)

    async def delete_pod(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> None:
        self._enter("delete_pod")
        if self.pods.pop((namespace, name), None) is not None:
            self._reconcile(namespace)

    async def delete_pods_by_label(self, namespace: str, label_selector, *, timeout: Optional[float] = None) -> None:
        if not label_selector:
            raise ValueError("delete_pods_by_label requires a non-empty label selector")
        self._enter("delete_pods_by_label")
        for key in [k for k, pod in self.pods.items() if k[0] == namespace and matches(pod.metadata.labels, label_selector)]:
            del self.pods[key]
        self._reconcile(namespace)

    # =========================================================================
    # Deployment operations
    # =========================================================================

    async def get_deployment(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> client.V1Deployment:
        self._enter("get_deployment")
        deployment = self.deployments.get((namespace, name))
        if deployment is None:
            raise NotFoundError("deployment", name, namespace)
        return copy.deepcopy(deployment)

    async def list_deployments(self, namespace: str, label_selector=None, *, timeout: Optional[float] = None) -> List[client.V1Deployment]:
        self._enter("list_deployments")
        return [
            copy.deepcopy(d) for (ns, _), d in self.deployments.items()
            if ns == namespace and matches(d.metadata.labels, label_selector)
        ]

    async def create_deployment(self, namespace: str, deployment: client.V1Deployment, *, timeout: Optional[float] = None) -> client.V1Deployment:
        self._enter("create_deployment")
        key = (namespace, deployment.metadata.name)
        if key in self.deployments:
            raise ConflictError("create deployment", namespace, deployment.metadata.name, 409, "AlreadyExists")

        stored = copy.deepcopy(deployment)
        stored.metadata.namespace = namespace
        stored.metadata.creation_timestamp = datetime.now(timezone.utc)
        stored.status = client.V1DeploymentStatus(replicas=0)
        self._bump(stored)
        self.deployments[key] = stored
        self._reconcile(namespace)
        return copy.deepcopy(self.deployments[key])

    async def update_deployment(self, namespace: str, deployment: client.V1Deployment, *, timeout: Optional[float] = None) -> client.V1Deployment:
        self._enter("update_deployment")
        key = (namespace, deployment.metadata.name)
        current = self.deployments.get(key)
        if current is None:
            raise NotFoundError("deployment", deployment.metadata.name, namespace)
        self._check_version("update deployment", namespace, current, deployment)

        stored = copy.deepcopy(deployment)
        stored.metadata.namespace = namespace
        stored.metadata.creation_timestamp = current.metadata.creation_timestamp
        stored.status = current.status
        self._bump(stored)
        self.deployments[key] = stored
        self._reconcile(namespace)
        return copy.deepcopy(self.deployments[key])

    async def delete_deployment(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> None:
        self._enter("delete_deployment")
        deployment = self.deployments.pop((namespace, name), None)
        if deployment is None:
            return
        selector = deployment.spec.selector.match_labels
        for key in [k for k, pod in self.pods.items() if k[0] == namespace and matches(pod.metadata.labels, selector)]:
            del self.pods[key]

    # =========================================================================
    # Internals
    # =========================================================================

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    def _bump(self, obj) -> None:
        obj.metadata.resource_version = str(next(self._versions))

    @staticmethod
    def _check_version(operation: str, namespace: str, current, incoming) -> None:
        expected = incoming.metadata.resource_version
        if expected and expected != current.metadata.resource_version:
            raise ConflictError(operation, namespace, incoming.metadata.name, 409, "object has been modified")

    def _mark_ready(self, pod: client.V1Pod, ready: bool) -> None:
        now = datetime.now(timezone.utc)
        if pod.status is None:
            pod.status = client.V1PodStatus()
        pod.status.phase = "Running" if ready else "Pending"
        pod.status.pod_ip = pod.status.pod_ip or f"10.0.0.{next(self._ip_suffix)}"
        pod.status.host_ip = pod.status.host_ip or "192.168.1.10"
        pod.status.conditions = [
            client.V1PodCondition(type="Ready", status="True" if ready else "False", last_transition_time=now),
        ]

    def _owned_pods(self, namespace: str, deployment: client.V1Deployment) -> List[client.V1Pod]:
        selector = deployment.spec.selector.match_labels
        return [
            pod for (ns, _), pod in self.pods.items()
            if ns == namespace and matches(pod.metadata.labels, selector)
        ]

    def _reconcile(self, namespace: str) -> None:
        for (ns, name), deployment in list(self.deployments.items()):
            if ns != namespace:
                continue

            desired = deployment.spec.replicas or 0
            owned = self._owned_pods(namespace, deployment)

            if len(owned) < desired and self.auto_provision:
                for _ in range(desired - len(owned)):
                    self._spawn_pod(namespace, deployment)
            elif len(owned) > desired:
                # Same preference order as the ReplicaSet controller, simplified
                surplus = sorted(
                    owned,
                    key=lambda p: (
                        "computeId" in (p.metadata.labels or {}),
                        is_pod_ready(p),
                        -p.metadata.creation_timestamp.timestamp(),
                    ),
                )[: len(owned) - desired]
                for pod in surplus:
                    del self.pods[(namespace, pod.metadata.name)]

        self._refresh_deployment_status(namespace)

    def _spawn_pod(self, namespace: str, deployment: client.V1Deployment) -> None:
        template = deployment.spec.template
        name = f"{deployment.metadata.name}-{next(self._pod_suffix):05d}"
        pod = client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=dict(template.metadata.labels or {}),
                annotations=dict(template.metadata.annotations or {}),
                creation_timestamp=datetime.now(timezone.utc),
            ),
            spec=copy.deepcopy(template.spec),
            status=client.V1PodStatus(phase="Pending", conditions=[]),
        )
        if self.auto_ready:
            self._mark_ready(pod, True)
        self._bump(pod)
        self.pods[(namespace, name)] = pod

    def _refresh_deployment_status(self, namespace: str) -> None:
        for (ns, _), deployment in self.deployments.items():
            if ns != namespace:
                continue
            owned = self._owned_pods(namespace, deployment)
            ready = sum(1 for pod in owned if is_pod_ready(pod))
            deployment.status = client.V1DeploymentStatus(
                replicas=len(owned),
                ready_replicas=ready,
                available_replicas=ready,
                updated_replicas=len(owned),
                conditions=[
                    client.V1DeploymentCondition(
                        type="Available",
                        status="True" if ready >= (deployment.spec.replicas or 0) else "False",
                        reason="MinimumReplicasAvailable",
                    ),
                ],
            )
