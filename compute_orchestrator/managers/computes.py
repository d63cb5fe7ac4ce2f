"""
Compute Lifecycle Manager

A compute is one pod of its preset's deployment, identified by the
``computeId`` label. There is no other state: creating a compute scales the
deployment up by one and claims the pod the controller creates; deleting it
removes the pod and scales down by one.

Lifecycle per compute:
    Provisioning  replica count incremented, no pod claimed yet
    Claimed       a free pod carries our computeId label
    Ready         the pod's Ready condition is True
    Deleting      pod deleted, replica count decremented
    Gone          evicted from the cache

Concurrency:
- Replica changes are read-modify-write with resourceVersion-conditional
  updates, retried on conflict.
- A claim is a resourceVersion-conditional pod update, so two managers can
  never claim the same pod; the loser moves to the next candidate. Within
  one process, claims for the same preset are also serialized by a lock.
- The cache is only trusted for plain reads. Delete, restart and status
  re-read the pod from the cluster.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from kubernetes import client

from ..errors import (
    ComputeError,
    ConflictError,
    NotFoundError,
    OperationTimeoutError,
    OrchestratorError,
    ValidationError,
)
from ..kubernetes.helpers import is_pod_ready, is_valid_label_key, is_valid_label_value, pod_port_map
from ..kubernetes.operations import MIN_CALL_TIMEOUT, DeploymentOperations, PodOperations
from ..utils.id_generator import generate_prefixed_id
from ..utils.retry import create_conflict_retry
from .cache import ComputeCache
from .presets import PresetManager, validate_resources
from .types import (
    ANNOTATION_RESOURCE_OVERRIDES,
    APP_COMPUTE,
    LABEL_APP,
    LABEL_COMPUTE_ID,
    LABEL_PRESET_ID,
    RESERVED_COMPUTE_LABELS,
    ComputeCondition,
    ComputeFilters,
    ComputeInfo,
    ComputeNetwork,
    ComputePhase,
    ComputeResources,
    ComputeSpec,
    ComputeStatus,
    ManagerConfig,
    compute_labels,
    deployment_name_from_preset_id,
)

logger = logging.getLogger(__name__)

COMPUTE_ID_PREFIX = "compute"

# Set by the ReplicaSet controller, never copied between pods
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"

_PHASES = {
    "Pending": ComputePhase.PENDING,
    "Running": ComputePhase.RUNNING,
    "Succeeded": ComputePhase.SUCCEEDED,
    "Failed": ComputePhase.FAILED,
}


class ComputeManager(ABC):
    """Lifecycle of compute instances."""

    @abstractmethod
    async def create_compute(self, spec: ComputeSpec) -> ComputeInfo:
        pass

    @abstractmethod
    async def get_compute(self, compute_id: str) -> ComputeInfo:
        pass

    @abstractmethod
    async def list_computes(self, filters: Optional[ComputeFilters] = None) -> List[ComputeInfo]:
        pass

    @abstractmethod
    async def delete_compute(self, compute_id: str) -> None:
        pass

    @abstractmethod
    async def get_compute_status(self, compute_id: str) -> ComputeStatus:
        pass

    @abstractmethod
    async def wait_for_compute_ready(self, compute_id: str, timeout: Optional[float] = None) -> ComputeInfo:
        pass

    @abstractmethod
    async def restart_compute(self, compute_id: str) -> ComputeInfo:
        pass

    async def start(self) -> None:
        """Start background work. No-op unless overridden."""

    async def close(self) -> None:
        """Stop background work. No-op unless overridden."""

    async def __aenter__(self) -> "ComputeManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class DefaultComputeManager(ComputeManager):
    """
    ComputeManager backed by preset deployments and their pods.

    Usage:
        async with DefaultComputeManager(k8s, k8s, presets, config) as computes:
            info = await computes.create_compute(ComputeSpec(preset_id="web-server"))
            await computes.wait_for_compute_ready(info.compute_id, timeout=120)

    The context manager starts and stops the periodic cache refresh. Without
    it, call ``start()`` / ``close()`` yourself (or skip them: every operation
    works without the refresh task).
    """

    def __init__(
        self,
        pod_ops: PodOperations,
        deployment_ops: DeploymentOperations,
        preset_manager: PresetManager,
        config: Optional[ManagerConfig] = None,
        cache: Optional[ComputeCache] = None,
    ):
        config = config or ManagerConfig.from_settings()
        self.pod_ops = pod_ops
        self.deployment_ops = deployment_ops
        self.preset_manager = preset_manager
        self.namespace = config.namespace
        self.logger = config.logger or logger

        self.claim_timeout = config.claim_timeout
        self.claim_poll_interval = config.claim_poll_interval
        self.cache_refresh_interval = config.cache_refresh_interval
        self.replica_update_max_attempts = config.replica_update_max_attempts

        self.cache = cache if cache is not None else ComputeCache()
        self._claim_locks: Dict[str, asyncio.Lock] = {}
        # compute id -> pod that was claimed for it but came back terminating
        self._terminating_claims: Dict[str, str] = {}
        self._refresh_task: Optional[asyncio.Task] = None

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create_compute(self, spec: ComputeSpec) -> ComputeInfo:
        """
        Create a compute by scaling its preset up by one and claiming the new pod.

        If no pod can be claimed within the claim timeout the scale-up is
        reverted before the error is raised. Cancellation is not rolled back.

        Raises:
            ValidationError: Malformed spec (nothing was changed)
            ComputeError: Preset missing, scale-up failed, or claim timed out
        """
        spec = spec.model_copy(deep=True)
        if not spec.compute_id:
            spec.compute_id = generate_prefixed_id(COMPUTE_ID_PREFIX)

        self._validate_compute_spec(spec)

        try:
            deployment = await self.preset_manager.ensure_preset_deployment(spec.preset_id)
            existing = await self.pod_ops.list_pods(self.namespace, compute_labels(spec.compute_id))
        except OrchestratorError as e:
            raise ComputeError(spec.compute_id, "create", e) from e

        if any(self._build_compute_info(pod) is not None for pod in existing):
            raise ComputeError(
                spec.compute_id, "create",
                ValidationError("compute_id", spec.compute_id, "a compute with this ID already exists"),
            )

        deployment_name = deployment.metadata.name
        try:
            previous, current = await self._change_replicas(deployment_name, 1)
        except OrchestratorError as e:
            raise ComputeError(spec.compute_id, "create", e) from e

        self.logger.info(
            f"[COMPUTE] Scaled {deployment_name} {previous} -> {current} for compute {spec.compute_id}"
        )

        try:
            info = await self._claim_pod(spec)
        except OrchestratorError as e:
            await self._rollback_scale_up(deployment_name, spec.compute_id)
            raise ComputeError(spec.compute_id, "create", e) from e

        self.cache.put(info)
        self.logger.info(f"[COMPUTE] Created compute {spec.compute_id} from preset {spec.preset_id} (pod {info.pod_name})")
        return info

    async def get_compute(self, compute_id: str) -> ComputeInfo:
        cached = self.cache.get(compute_id)
        if cached is not None:
            return cached
        return await self._fetch_compute(compute_id, "get")

    async def list_computes(self, filters: Optional[ComputeFilters] = None) -> List[ComputeInfo]:
        filters = filters or ComputeFilters()

        selector = dict(filters.labels)
        selector.update(compute_labels(preset_id=filters.preset_id or ""))

        generation = self.cache.generation()
        try:
            pods = await self.pod_ops.list_pods(self.namespace, selector)
        except OrchestratorError as e:
            raise ComputeError("*", "list", e) from e

        computes = []
        for pod in pods:
            info = self._build_compute_info(pod)
            if info is None:
                # Unclaimed pods and terminating pods are not computes
                continue
            if filters.phase and info.status.phase != filters.phase:
                continue
            computes.append(info)

        self.cache.put_many(computes, since=generation)
        return computes

    async def delete_compute(self, compute_id: str) -> None:
        """
        Delete the compute's pod and scale its preset down by one.

        The compute must exist: deleting an unknown compute raises
        ComputeError(NotFoundError).
        """
        compute = await self._fetch_compute(compute_id, "delete")

        try:
            await self.pod_ops.delete_pod(self.namespace, compute.pod_name)
        except OrchestratorError as e:
            raise ComputeError(compute_id, "delete", e) from e

        self.cache.evict(compute_id)

        try:
            previous, current = await self._change_replicas(compute.deployment_name, -1)
        except OrchestratorError as e:
            raise ComputeError(compute_id, "delete", e) from e

        if previous == current:
            self.logger.warning(f"[COMPUTE] {compute.deployment_name} already at 0 replicas while deleting {compute_id}")

        self.logger.info(f"[COMPUTE] Deleted compute {compute_id} ({compute.deployment_name} {previous} -> {current})")

    # =========================================================================
    # STATUS AND LIFECYCLE
    # =========================================================================

    async def get_compute_status(self, compute_id: str) -> ComputeStatus:
        compute = await self._fetch_compute(compute_id, "get status")
        return compute.status

    async def wait_for_compute_ready(self, compute_id: str, timeout: Optional[float] = None) -> ComputeInfo:
        """
        Wait until the compute's pod reports Ready, then return a fresh ComputeInfo.

        Args:
            compute_id: Compute to wait for
            timeout: Bound in seconds (default: the pod client's default deadline)

        Raises:
            ComputeError: Compute unknown, or OperationTimeoutError when the bound elapses
        """
        compute = await self.get_compute(compute_id)

        try:
            await self.pod_ops.wait_for_pod_ready(self.namespace, compute.pod_name, timeout)
        except OrchestratorError as e:
            raise ComputeError(compute_id, "wait ready", e) from e

        return await self._fetch_compute(compute_id, "wait ready")

    async def restart_compute(self, compute_id: str) -> ComputeInfo:
        """
        Replace the compute's pod, keeping its compute id.

        Only the pod is deleted; the replica count is unchanged so the
        controller creates a replacement, which is then claimed under the
        same compute id with the same caller labels and annotations.
        """
        compute = await self._fetch_compute(compute_id, "restart")

        try:
            await self.pod_ops.delete_pod(self.namespace, compute.pod_name)
        except OrchestratorError as e:
            raise ComputeError(compute_id, "restart", e) from e

        self.cache.evict(compute_id)
        self.logger.info(f"[COMPUTE] Deleted pod {compute.pod_name} to restart compute {compute_id}")

        spec = ComputeSpec(
            compute_id=compute_id,
            preset_id=compute.preset_id,
            labels={
                k: v for k, v in compute.labels.items()
                if k not in RESERVED_COMPUTE_LABELS and k != POD_TEMPLATE_HASH_LABEL
            },
            annotations=compute.annotations,
        )
        try:
            info = await self._claim_pod(spec)
        except OrchestratorError as e:
            raise ComputeError(compute_id, "restart", e) from e

        self.cache.put(info)
        self.logger.info(f"[COMPUTE] Restarted compute {compute_id} on pod {info.pod_name}")
        return info

    # =========================================================================
    # BACKGROUND CACHE REFRESH
    # =========================================================================

    async def start(self) -> None:
        """Start the periodic cache refresh (no-op if running or disabled)."""
        if self._refresh_task is not None or self.cache_refresh_interval <= 0:
            return
        self._refresh_task = asyncio.create_task(self._refresh_cache_periodically())
        self.logger.info(f"[CACHE] Started compute cache refresh every {self.cache_refresh_interval}s")

    async def close(self) -> None:
        """Stop the periodic cache refresh."""
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.info("[CACHE] Stopped compute cache refresh")

    async def refresh_cache(self) -> int:
        """
        Re-list every compute into the cache. Returns the number of computes seen.

        Failures are logged, never raised. Entries missing from the listing are
        kept: a compute being created concurrently may not be labeled yet.
        """
        try:
            computes = await self.list_computes(ComputeFilters())
        except Exception as e:
            self.logger.error(f"[CACHE] Error refreshing compute cache: {e}", exc_info=True)
            return 0

        self.logger.debug(f"[CACHE] Refreshed {len(computes)} computes")
        return len(computes)

    async def _refresh_cache_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.cache_refresh_interval)
            await self.refresh_cache()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _validate_compute_spec(self, spec: ComputeSpec) -> None:
        if not spec.preset_id:
            raise ValidationError("preset_id", spec.preset_id, "preset ID is required")
        if not spec.compute_id:
            raise ValidationError("compute_id", spec.compute_id, "compute ID is required")
        if not is_valid_label_value(spec.compute_id):
            raise ValidationError("compute_id", spec.compute_id, "must be a valid label value")

        # Reserved labels may be present (e.g. from render_preset) as long as their values match
        expected = {LABEL_APP: APP_COMPUTE, LABEL_PRESET_ID: spec.preset_id, LABEL_COMPUTE_ID: spec.compute_id}
        for key, value in spec.labels.items():
            if key in expected:
                if value and value != expected[key]:
                    raise ValidationError(f"labels.{key}", value, "reserved label cannot be overridden")
                continue
            if not is_valid_label_key(key):
                raise ValidationError("labels", key, "must be a valid label key")
            if not is_valid_label_value(value):
                raise ValidationError(f"labels.{key}", value, "must be a valid label value")

        for key in spec.annotations:
            if not is_valid_label_key(key):
                raise ValidationError("annotations", key, "must be a valid annotation key")

        if spec.resource_overrides is not None:
            validate_resources("resource_overrides", spec.resource_overrides)

    def _claim_lock(self, preset_id: str) -> asyncio.Lock:
        lock = self._claim_locks.get(preset_id)
        if lock is None:
            lock = self._claim_locks[preset_id] = asyncio.Lock()
        return lock

    async def _claim_pod(self, spec: ComputeSpec) -> ComputeInfo:
        """Poll for an unclaimed pod of the preset and claim it for ``spec.compute_id``."""
        selector = f"{LABEL_APP}={APP_COMPUTE},{LABEL_PRESET_ID}={spec.preset_id},!{LABEL_COMPUTE_ID}"

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.claim_timeout

        try:
            while True:
                info = await self._try_claim(spec, selector, deadline)
                if info is not None:
                    return info

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise OperationTimeoutError(
                        f"timed out after {self.claim_timeout}s waiting for a pod of preset {spec.preset_id}"
                    )
                self.logger.debug(f"[COMPUTE] No claimable pod for {spec.compute_id} yet, polling again")
                await asyncio.sleep(min(self.claim_poll_interval, remaining))
        finally:
            self._terminating_claims.pop(spec.compute_id, None)

    async def _try_claim(self, spec: ComputeSpec, selector: str, deadline: float) -> Optional[ComputeInfo]:
        """One claim pass. Every cluster call is bounded by the time left until ``deadline``."""
        loop = asyncio.get_running_loop()

        def time_left() -> float:
            return max(deadline - loop.time(), MIN_CALL_TIMEOUT)

        async with self._claim_lock(spec.preset_id):
            if await self._terminating_claim_remains(spec.compute_id, time_left()):
                return None

            try:
                pods = await self.pod_ops.list_pods(self.namespace, selector, timeout=time_left())
            except OrchestratorError as e:
                self.logger.debug(f"[COMPUTE] Listing claimable pods failed, will retry: {e}")
                return None

            for pod in pods:
                if pod.metadata.deletion_timestamp is not None:
                    continue

                labels = dict(pod.metadata.labels or {})
                labels.update({k: v for k, v in spec.labels.items() if k not in RESERVED_COMPUTE_LABELS})
                labels[LABEL_COMPUTE_ID] = spec.compute_id
                pod.metadata.labels = labels

                annotations = dict(pod.metadata.annotations or {})
                annotations.update(spec.annotations)
                if spec.resource_overrides is not None:
                    annotations[ANNOTATION_RESOURCE_OVERRIDES] = spec.resource_overrides.model_dump_json()
                pod.metadata.annotations = annotations

                try:
                    # Conditional on the resourceVersion we listed
                    claimed = await self.pod_ops.update_pod(self.namespace, pod, timeout=time_left())
                except (ConflictError, NotFoundError):
                    self.logger.debug(f"[COMPUTE] Pod {pod.metadata.name} was taken or removed, trying next")
                    continue

                info = self._build_compute_info(claimed)
                if info is None:
                    # Terminating but labeled with our id; no other pod is claimed until it is gone
                    self._terminating_claims[spec.compute_id] = claimed.metadata.name
                    self.logger.warning(
                        f"[COMPUTE] Claimed pod {claimed.metadata.name} is terminating, "
                        f"waiting for it to go before claiming another for {spec.compute_id}"
                    )
                return info

            return None

    async def _terminating_claim_remains(self, compute_id: str, timeout: float) -> bool:
        name = self._terminating_claims.get(compute_id)
        if name is None:
            return False
        try:
            await self.pod_ops.get_pod(self.namespace, name, timeout=timeout)
        except NotFoundError:
            del self._terminating_claims[compute_id]
            return False
        except OrchestratorError as e:
            self.logger.debug(f"[COMPUTE] Checking terminating pod {name} failed, will retry: {e}")
        return True

    async def _change_replicas(self, deployment_name: str, delta: int) -> Tuple[int, int]:
        """Apply ``delta`` to a deployment's replica count (never below 0). Returns (before, after)."""

        @create_conflict_retry(self.replica_update_max_attempts)
        async def _apply() -> Tuple[int, int]:
            deployment = await self.deployment_ops.get_deployment(self.namespace, deployment_name)
            current = deployment.spec.replicas or 0
            target = max(0, current + delta)
            if target != current:
                deployment.spec.replicas = target
                await self.deployment_ops.update_deployment(self.namespace, deployment)
            return current, target

        return await _apply()

    async def _rollback_scale_up(self, deployment_name: str, compute_id: str) -> None:
        try:
            previous, current = await self._change_replicas(deployment_name, -1)
            self.logger.info(
                f"[COMPUTE] Rolled back {deployment_name} {previous} -> {current} after failed create of {compute_id}"
            )
        except Exception as e:
            self.logger.warning(f"[COMPUTE] Failed to roll back {deployment_name} for compute {compute_id}: {e}")

    async def _fetch_compute(self, compute_id: str, operation: str) -> ComputeInfo:
        """Look a compute up in the cluster by its label and refresh its cache entry."""
        generation = self.cache.generation()
        try:
            pods = await self.pod_ops.list_pods(self.namespace, compute_labels(compute_id))
        except OrchestratorError as e:
            raise ComputeError(compute_id, operation, e) from e

        for pod in pods:
            info = self._build_compute_info(pod)
            if info is not None:
                self.cache.put_many([info], since=generation)
                return info

        self.cache.evict(compute_id)
        raise ComputeError(compute_id, operation, NotFoundError("compute", compute_id, self.namespace))

    def _build_compute_info(self, pod: client.V1Pod) -> Optional[ComputeInfo]:
        metadata = pod.metadata
        labels = dict(metadata.labels or {})
        compute_id = labels.get(LABEL_COMPUTE_ID)
        preset_id = labels.get(LABEL_PRESET_ID)

        if not compute_id or not preset_id:
            return None
        if metadata.deletion_timestamp is not None:
            return None

        status = pod.status or client.V1PodStatus()
        conditions = [
            ComputeCondition(
                type=c.type,
                status=c.status,
                reason=c.reason,
                message=c.message,
                last_transition_time=c.last_transition_time,
            )
            for c in status.conditions or []
        ]

        resources = ComputeResources()
        containers = pod.spec.containers if pod.spec else []
        if containers and containers[0].resources:
            resources = ComputeResources(
                requests={k: str(v) for k, v in (containers[0].resources.requests or {}).items()},
                limits={k: str(v) for k, v in (containers[0].resources.limits or {}).items()},
            )

        transitions = [c.last_transition_time for c in conditions if c.last_transition_time]
        updated_at = max(transitions) if transitions else metadata.creation_timestamp

        return ComputeInfo(
            compute_id=compute_id,
            name=metadata.name,
            preset_id=preset_id,
            deployment_name=deployment_name_from_preset_id(preset_id),
            pod_name=metadata.name,
            status=ComputeStatus(
                phase=_PHASES.get(status.phase, ComputePhase.PENDING),
                is_ready=is_pod_ready(pod),
                message=status.message or "",
                conditions=conditions,
            ),
            resources=resources,
            network=ComputeNetwork(
                pod_ip=status.pod_ip,
                host_ip=status.host_ip,
                ports=pod_port_map(pod),
            ),
            created_at=metadata.creation_timestamp,
            updated_at=updated_at,
            labels=labels,
            annotations=dict(metadata.annotations or {}),
        )
