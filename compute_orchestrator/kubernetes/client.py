"""
Kubernetes Client for Preset Deployments and Compute Pods

This module wraps the synchronous kubernetes python client behind the async
PodOperations / DeploymentOperations interfaces used by the managers.

Every call:
- runs in a worker thread (``asyncio.to_thread``) so the event loop never blocks
- is bounded by a deadline (per-call ``timeout`` or the configured default),
  enforced both locally and through the client's ``_request_timeout``
- translates failures: 404 -> NotFoundError, 409 -> ConflictError,
  other API/transport failures -> ClusterAPIError, deadline -> OperationTimeoutError
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError
from urllib3.exceptions import TimeoutError as TransportTimeoutError

from ..config import get_settings
from ..errors import ClusterAPIError, ConflictError, NotFoundError, OperationTimeoutError
from .helpers import format_label_selector
from .operations import DeploymentOperations, LabelSelector, PodOperations

logger = logging.getLogger(__name__)


class KubernetesClient(PodOperations, DeploymentOperations):
    """
    Pod and Deployment operations against a real cluster.

    The API objects can be injected (tests pass mocks); when they are not,
    cluster credentials are loaded in-cluster first, then from kubeconfig.
    """

    def __init__(
        self,
        namespace: Optional[str] = None,
        default_timeout: Optional[float] = None,
        core_v1: Optional[client.CoreV1Api] = None,
        apps_v1: Optional[client.AppsV1Api] = None,
        kubeconfig_path: Optional[str] = None,
        pod_ready_poll_interval: Optional[float] = None,
    ):
        self.settings = get_settings()

        if core_v1 is None or apps_v1 is None:
            self._load_config(kubeconfig_path or self.settings.k8s_kubeconfig_path)

        self.core_v1 = core_v1 or client.CoreV1Api()
        self.apps_v1 = apps_v1 or client.AppsV1Api()

        self.namespace = namespace or self.settings.k8s_namespace or "default"
        self.default_timeout = (
            default_timeout if default_timeout and default_timeout > 0
            else self.settings.k8s_default_timeout_seconds
        )
        self.pod_ready_poll_interval = (
            pod_ready_poll_interval if pod_ready_poll_interval and pod_ready_poll_interval > 0
            else self.settings.pod_ready_poll_interval_seconds
        )

        logger.info(f"Kubernetes client initialized - namespace: {self.namespace}, default timeout: {self.default_timeout}s")

    @staticmethod
    def _load_config(kubeconfig_path: str) -> None:
        if kubeconfig_path:
            try:
                config.load_kube_config(config_file=kubeconfig_path)
                logger.info(f"Loaded kubeconfig from {kubeconfig_path}")
                return
            except config.ConfigException as e:
                logger.error(f"Failed to load kubeconfig {kubeconfig_path}: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e

        try:
            # Try in-cluster config first (for production)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (for development)
                config.load_kube_config()
                logger.info("Loaded kubeconfig for development")
            except config.ConfigException as e:
                logger.error(f"Failed to load Kubernetes config: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e

    # =========================================================================
    # CALL PLUMBING
    # =========================================================================

    def _resolve_namespace(self, namespace: Optional[str]) -> str:
        return namespace or self.namespace

    def _resolve_timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout and timeout > 0 else self.default_timeout

    @staticmethod
    def _check_namespace(namespace: str, obj: Any) -> None:
        obj_namespace = obj.metadata.namespace if obj.metadata else None
        if obj_namespace and obj_namespace != namespace:
            raise ValueError(
                f"object namespace {obj_namespace} does not match requested namespace {namespace}"
            )

    async def _call(
        self,
        operation: str,
        kind: str,
        fn: Callable[..., Any],
        *,
        namespace: str,
        target: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Run one API call in a worker thread under a deadline.

        ``target`` names the object for error messages only; everything in
        ``kwargs`` (plus ``namespace``) is passed to ``fn``.
        """
        deadline = self._resolve_timeout(timeout)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, namespace=namespace, _request_timeout=deadline, **kwargs),
                timeout=deadline,
            )
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(
                f"{operation} {target or ''} in namespace {namespace} exceeded {deadline}s deadline"
            ) from e
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(kind, target or "", namespace) from e
            if e.status == 409:
                raise ConflictError(operation, namespace, target, e.status, e.reason) from e
            raise ClusterAPIError(operation, namespace, target, e.status, e.reason) from e
        except TransportTimeoutError as e:
            raise OperationTimeoutError(
                f"{operation} {target or ''} in namespace {namespace} timed out: {e}"
            ) from e
        except (TransportError, OSError) as e:
            raise ClusterAPIError(operation, namespace, target, reason=str(e)) from e

    # =========================================================================
    # POD OPERATIONS
    # =========================================================================

    async def get_pod(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> client.V1Pod:
        namespace = self._resolve_namespace(namespace)
        return await self._call(
            "get pod", "pod", self.core_v1.read_namespaced_pod,
            namespace=namespace, target=name, name=name, timeout=timeout,
        )

    async def list_pods(
        self,
        namespace: str,
        label_selector: LabelSelector = None,
        *,
        timeout: Optional[float] = None
    ) -> List[client.V1Pod]:
        namespace = self._resolve_namespace(namespace)
        kwargs = {}
        selector = format_label_selector(label_selector)
        if selector:
            kwargs["label_selector"] = selector

        result = await self._call(
            "list pods", "pod", self.core_v1.list_namespaced_pod,
            namespace=namespace, timeout=timeout, **kwargs,
        )
        return list(result.items or [])

    async def create_pod(self, namespace: str, pod: client.V1Pod, *, timeout: Optional[float] = None) -> client.V1Pod:
        namespace = self._resolve_namespace(namespace)
        self._check_namespace(namespace, pod)
        created = await self._call(
            "create pod", "pod", self.core_v1.create_namespaced_pod,
            namespace=namespace, target=pod.metadata.name, timeout=timeout, body=pod,
        )
        logger.info(f"[K8S] Created pod: {created.metadata.name}")
        return created

    async def update_pod(self, namespace: str, pod: client.V1Pod, *, timeout: Optional[float] = None) -> client.V1Pod:
        namespace = self._resolve_namespace(namespace)
        self._check_namespace(namespace, pod)
        name = pod.metadata.name
        return await self._call(
            "update pod", "pod", self.core_v1.replace_namespaced_pod,
            namespace=namespace, target=name, name=name, timeout=timeout, body=pod,
        )

    async def delete_pod(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> None:
        namespace = self._resolve_namespace(namespace)
        try:
            await self._call(
                "delete pod", "pod", self.core_v1.delete_namespaced_pod,
                namespace=namespace, target=name, name=name, timeout=timeout,
            )
            logger.info(f"[K8S] Deleted pod: {name}")
        except NotFoundError:
            logger.debug(f"[K8S] Pod {name} already deleted")

    async def delete_pods_by_label(
        self,
        namespace: str,
        label_selector: LabelSelector,
        *,
        timeout: Optional[float] = None
    ) -> None:
        selector = format_label_selector(label_selector)
        if not selector:
            raise ValueError("delete_pods_by_label requires a non-empty label selector")

        namespace = self._resolve_namespace(namespace)
        await self._call(
            "delete pods by label", "pod", self.core_v1.delete_collection_namespaced_pod,
            namespace=namespace, timeout=timeout,
            label_selector=selector, propagation_policy="Foreground",
        )
        logger.info(f"[K8S] Deleted pods matching {selector}")

    # =========================================================================
    # DEPLOYMENT OPERATIONS
    # =========================================================================

    async def get_deployment(
        self,
        namespace: str,
        name: str,
        *,
        timeout: Optional[float] = None
    ) -> client.V1Deployment:
        namespace = self._resolve_namespace(namespace)
        return await self._call(
            "get deployment", "deployment", self.apps_v1.read_namespaced_deployment,
            namespace=namespace, target=name, name=name, timeout=timeout,
        )

    async def list_deployments(
        self,
        namespace: str,
        label_selector: LabelSelector = None,
        *,
        timeout: Optional[float] = None
    ) -> List[client.V1Deployment]:
        namespace = self._resolve_namespace(namespace)
        kwargs = {}
        selector = format_label_selector(label_selector)
        if selector:
            kwargs["label_selector"] = selector

        result = await self._call(
            "list deployments", "deployment", self.apps_v1.list_namespaced_deployment,
            namespace=namespace, timeout=timeout, **kwargs,
        )
        return list(result.items or [])

    async def create_deployment(
        self,
        namespace: str,
        deployment: client.V1Deployment,
        *,
        timeout: Optional[float] = None
    ) -> client.V1Deployment:
        namespace = self._resolve_namespace(namespace)
        self._check_namespace(namespace, deployment)
        created = await self._call(
            "create deployment", "deployment", self.apps_v1.create_namespaced_deployment,
            namespace=namespace, target=deployment.metadata.name, timeout=timeout, body=deployment,
        )
        logger.info(f"[K8S] Created deployment: {created.metadata.name}")
        return created

    async def update_deployment(
        self,
        namespace: str,
        deployment: client.V1Deployment,
        *,
        timeout: Optional[float] = None
    ) -> client.V1Deployment:
        namespace = self._resolve_namespace(namespace)
        self._check_namespace(namespace, deployment)
        return await self._call(
            "update deployment", "deployment", self.apps_v1.replace_namespaced_deployment,
            namespace=namespace, target=deployment.metadata.name, timeout=timeout,
            name=deployment.metadata.name, body=deployment,
        )

    async def delete_deployment(self, namespace: str, name: str, *, timeout: Optional[float] = None) -> None:
        namespace = self._resolve_namespace(namespace)
        try:
            await self._call(
                "delete deployment", "deployment", self.apps_v1.delete_namespaced_deployment,
                namespace=namespace, target=name, name=name, timeout=timeout,
                propagation_policy="Foreground",
            )
            logger.info(f"[K8S] Deleted deployment: {name}")
        except NotFoundError:
            logger.debug(f"[K8S] Deployment {name} already deleted")


# Global instance
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client() -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient()
    return _k8s_client_instance
