"""
Capability interfaces for the two cluster resource kinds the orchestrator uses.

The managers depend only on these abstract classes. ``KubernetesClient`` is the
production implementation; tests plug in an in-memory fake cluster.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Mapping, Optional, Union

from kubernetes import client

from ..errors import NotFoundError, OperationTimeoutError
from .helpers import is_pod_ready

logger = logging.getLogger(__name__)

# Either {"key": "value"} equality terms or a raw selector string ("a=b,!c")
LabelSelector = Optional[Union[Mapping[str, str], str]]

# Floor for the per-call deadline handed out by poll loops
MIN_CALL_TIMEOUT = 0.1


class PodOperations(ABC):
    """Pod read/write operations. Every call accepts an optional deadline in seconds."""

    # Overridden by implementations
    default_timeout: float = 30.0
    pod_ready_poll_interval: float = 1.0

    @abstractmethod
    async def get_pod(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> client.V1Pod:
        pass

    @abstractmethod
    async def list_pods(
        self,
        namespace: str,
        label_selector: LabelSelector = None,
        *,
        timeout: Optional[float] = None
    ) -> List[client.V1Pod]:
        pass

    @abstractmethod
    async def create_pod(self, namespace: str, pod: client.V1Pod, *, timeout: Optional[float] = None) -> client.V1Pod:
        pass

    @abstractmethod
    async def update_pod(self, namespace: str, pod: client.V1Pod, *, timeout: Optional[float] = None) -> client.V1Pod:
        """Replace a pod. Conditional on ``metadata.resource_version`` when it is set."""
        pass

    @abstractmethod
    async def delete_pod(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> None:
        """Delete a pod. Deleting a pod that is already gone is not an error."""
        pass

    @abstractmethod
    async def delete_pods_by_label(
        self,
        namespace: str,
        label_selector: LabelSelector,
        *,
        timeout: Optional[float] = None
    ) -> None:
        """Delete every pod matching a non-empty selector."""
        pass

    async def get_pod_by_label(
        self,
        namespace: str,
        label_selector: LabelSelector,
        *,
        timeout: Optional[float] = None
    ) -> client.V1Pod:
        """Return the first pod matching the selector, or raise NotFoundError."""
        if not label_selector:
            raise ValueError("get_pod_by_label requires a non-empty label selector")

        pods = await self.list_pods(namespace, label_selector, timeout=timeout)
        if not pods:
            raise NotFoundError("pod", f"with labels {label_selector}", namespace or None)
        return pods[0]

    async def wait_for_pod_ready(
        self,
        namespace: str,
        name: str,
        timeout: Optional[float] = None
    ) -> client.V1Pod:
        """
        Poll a pod until its Ready condition is True.

        A missing pod keeps the wait going (the controller may still be creating
        it), as does a read that runs out of time; any other error propagates
        immediately. Each read is bounded by the time left in the wait.

        Args:
            namespace: Pod namespace
            name: Pod name
            timeout: Overall bound in seconds (default: the client's default deadline)

        Raises:
            OperationTimeoutError: If the pod is not ready within the bound
        """
        bound = timeout if timeout and timeout > 0 else self.default_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + bound

        while True:
            remaining = deadline - loop.time()
            try:
                pod = await self.get_pod(namespace, name, timeout=max(remaining, MIN_CALL_TIMEOUT))
                if is_pod_ready(pod):
                    return pod
            except NotFoundError:
                logger.debug(f"[K8S] Pod {name} not found yet, still waiting")
            except OperationTimeoutError:
                logger.debug(f"[K8S] Reading pod {name} hit the wait deadline")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise OperationTimeoutError(
                    f"timed out after {bound}s waiting for pod {name} in namespace {namespace} to become ready"
                )
            await asyncio.sleep(min(self.pod_ready_poll_interval, remaining))


class DeploymentOperations(ABC):
    """Deployment read/write operations. Every call accepts an optional deadline in seconds."""

    @abstractmethod
    async def get_deployment(
        self,
        namespace: str,
        name: str,
        *,
        timeout: Optional[float] = None
    ) -> client.V1Deployment:
        pass

    @abstractmethod
    async def list_deployments(
        self,
        namespace: str,
        label_selector: LabelSelector = None,
        *,
        timeout: Optional[float] = None
    ) -> List[client.V1Deployment]:
        pass

    @abstractmethod
    async def create_deployment(
        self,
        namespace: str,
        deployment: client.V1Deployment,
        *,
        timeout: Optional[float] = None
    ) -> client.V1Deployment:
        pass

    @abstractmethod
    async def update_deployment(
        self,
        namespace: str,
        deployment: client.V1Deployment,
        *,
        timeout: Optional[float] = None
    ) -> client.V1Deployment:
        """Replace a deployment. Conditional on ``metadata.resource_version`` when it is set."""
        pass

    @abstractmethod
    async def delete_deployment(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> None:
        """Delete a deployment. Deleting a deployment that is already gone is not an error."""
        pass
