"""
Preset Registry

A preset is a container template stored as exactly one Deployment named
``preset-<presetId>``. The deployment starts at zero replicas; its replica
count afterwards tracks the number of live computes and is owned by the
compute manager, so updating a preset never changes it.

Deployment layout:
    metadata.labels      app=preset, presetId, name, version + caller labels
    metadata.annotations description, displayName + caller annotations
    spec.selector        app=compute, presetId
    template labels      app=compute, presetId + caller labels
    container            "compute", built from the template and resources
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from kubernetes import client
from kubernetes.utils import parse_quantity

from ..errors import (
    NotFoundError,
    OrchestratorError,
    PresetError,
    PresetInUseError,
    ValidationError,
)
from ..kubernetes.helpers import MAX_LABEL_LENGTH, is_dns1123_label, is_valid_label_key, is_valid_label_value
from ..kubernetes.operations import DeploymentOperations
from .types import (
    ANNOTATION_DESCRIPTION,
    ANNOTATION_DISPLAY_NAME,
    ANNOTATION_UPDATED_AT,
    DEPLOYMENT_NAME_PREFIX,
    LABEL_NAME,
    LABEL_PRESET_ID,
    LABEL_VERSION,
    RESERVED_COMPUTE_LABELS,
    ComputeResources,
    ComputeSpec,
    ContainerPort,
    DeploymentCondition,
    DeploymentStatus,
    EnvVar,
    ManagerConfig,
    PresetFilters,
    PresetInfo,
    PresetSpec,
    PresetTemplate,
    ResourceRequirements,
    VolumeMount,
    compute_labels,
    deployment_name_from_preset_id,
    label_safe,
    preset_id_from_deployment_name,
    preset_labels,
)

logger = logging.getLogger(__name__)

CONTAINER_NAME = "compute"
PULL_POLICIES = ("Always", "IfNotPresent", "Never")
PROTOCOLS = ("TCP", "UDP", "SCTP")
MAX_PORT_NAME_LENGTH = 15

_INTERNAL_ANNOTATIONS = (ANNOTATION_DESCRIPTION, ANNOTATION_DISPLAY_NAME, ANNOTATION_UPDATED_AT)


class PresetManager(ABC):
    """Lifecycle of preset templates."""

    @abstractmethod
    async def create_preset(self, spec: PresetSpec) -> PresetInfo:
        pass

    @abstractmethod
    async def get_preset(self, preset_id: str) -> PresetInfo:
        pass

    @abstractmethod
    async def list_presets(self, filters: Optional[PresetFilters] = None) -> List[PresetInfo]:
        pass

    @abstractmethod
    async def update_preset(self, preset_id: str, spec: PresetSpec) -> PresetInfo:
        pass

    @abstractmethod
    async def delete_preset(self, preset_id: str) -> None:
        pass

    @abstractmethod
    def validate_preset(self, spec: PresetSpec) -> None:
        """Raise ValidationError for a malformed spec. Never touches the cluster."""
        pass

    @abstractmethod
    async def render_preset(self, preset_id: str, params: Optional[Mapping[str, Any]] = None) -> ComputeSpec:
        pass

    @abstractmethod
    async def ensure_preset_deployment(self, preset_id: str) -> client.V1Deployment:
        pass

    @abstractmethod
    async def get_preset_deployment_status(self, preset_id: str) -> DeploymentStatus:
        pass


class DefaultPresetManager(PresetManager):
    """PresetManager backed by Deployments in one namespace."""

    def __init__(self, deployment_ops: DeploymentOperations, config: Optional[ManagerConfig] = None):
        config = config or ManagerConfig.from_settings()
        self.deployment_ops = deployment_ops
        self.namespace = config.namespace
        self.logger = config.logger or logger

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create_preset(self, spec: PresetSpec) -> PresetInfo:
        self.validate_preset(spec)

        deployment = self._build_deployment(spec)
        try:
            created = await self.deployment_ops.create_deployment(self.namespace, deployment)
        except OrchestratorError as e:
            raise PresetError(spec.preset_id, "create", e) from e

        self.logger.info(f"[PRESETS] Created preset {spec.preset_id} with deployment {created.metadata.name}")
        return self._build_preset_info(created)

    async def get_preset(self, preset_id: str) -> PresetInfo:
        deployment = await self._get_deployment(preset_id, "get")
        return self._build_preset_info(deployment)

    async def list_presets(self, filters: Optional[PresetFilters] = None) -> List[PresetInfo]:
        filters = filters or PresetFilters()

        selector = dict(filters.labels)
        selector.update(preset_labels(filters.preset_id or ""))

        try:
            deployments = await self.deployment_ops.list_deployments(self.namespace, selector)
        except OrchestratorError as e:
            raise PresetError(filters.preset_id or "*", "list", e) from e

        presets = []
        for deployment in deployments:
            info = self._build_preset_info(deployment)
            if filters.name and info.name != filters.name:
                continue
            if filters.version and info.version != filters.version:
                continue
            presets.append(info)

        return presets

    async def update_preset(self, preset_id: str, spec: PresetSpec) -> PresetInfo:
        self.validate_preset(spec)
        if spec.preset_id != preset_id:
            raise ValidationError(
                "preset_id", spec.preset_id, f"does not match the preset being updated ({preset_id})"
            )

        existing = await self._get_deployment(preset_id, "update")

        deployment = self._build_deployment(spec)
        deployment.metadata.name = existing.metadata.name
        deployment.metadata.namespace = existing.metadata.namespace
        deployment.metadata.resource_version = existing.metadata.resource_version
        deployment.metadata.uid = existing.metadata.uid
        deployment.metadata.creation_timestamp = existing.metadata.creation_timestamp
        deployment.metadata.annotations[ANNOTATION_UPDATED_AT] = datetime.now(timezone.utc).isoformat()
        # Live computes are counted by the replica count; a template change must not touch it
        deployment.spec.replicas = existing.spec.replicas

        try:
            updated = await self.deployment_ops.update_deployment(self.namespace, deployment)
        except OrchestratorError as e:
            raise PresetError(preset_id, "update", e) from e

        self.logger.info(f"[PRESETS] Updated preset {preset_id}")
        return self._build_preset_info(updated)

    async def delete_preset(self, preset_id: str) -> None:
        deployment = await self._get_deployment(preset_id, "delete")

        replicas = deployment.spec.replicas or 0
        if replicas > 0:
            raise PresetInUseError(preset_id, replicas)

        try:
            await self.deployment_ops.delete_deployment(self.namespace, deployment.metadata.name)
        except OrchestratorError as e:
            raise PresetError(preset_id, "delete", e) from e

        self.logger.info(f"[PRESETS] Deleted preset {preset_id}")

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_preset(self, spec: PresetSpec) -> None:
        if not spec.preset_id:
            raise ValidationError("preset_id", spec.preset_id, "preset ID is required")
        if not spec.name:
            raise ValidationError("name", spec.name, "preset name is required")
        if not spec.template.image:
            raise ValidationError("template.image", spec.template.image, "preset template image is required")

        max_id_length = MAX_LABEL_LENGTH - len(DEPLOYMENT_NAME_PREFIX)
        if not is_dns1123_label(spec.preset_id) or len(spec.preset_id) > max_id_length:
            raise ValidationError(
                "preset_id", spec.preset_id,
                f"must be lowercase alphanumeric or '-', start and end alphanumeric, at most {max_id_length} characters",
            )

        if spec.version and not is_valid_label_value(spec.version):
            raise ValidationError("version", spec.version, "must be a valid label value")

        for key, value in spec.labels.items():
            if key in RESERVED_COMPUTE_LABELS:
                raise ValidationError("labels", key, "label is reserved for preset and compute discovery")
            if not is_valid_label_key(key):
                raise ValidationError("labels", key, "must be a valid label key")
            if not is_valid_label_value(value):
                raise ValidationError(f"labels.{key}", value, "must be a valid label value")

        for key in spec.annotations:
            if not is_valid_label_key(key):
                raise ValidationError("annotations", key, "must be a valid annotation key")

        template = spec.template
        if template.image_pull_policy and template.image_pull_policy not in PULL_POLICIES:
            raise ValidationError(
                "template.image_pull_policy", template.image_pull_policy,
                f"must be one of {', '.join(PULL_POLICIES)}",
            )

        for env in template.env:
            if not env.name:
                raise ValidationError("template.env", env.value, "environment variable name is required")

        seen_ports = set()
        for port in template.ports:
            if not 1 <= port.container_port <= 65535:
                raise ValidationError("template.ports", port.container_port, "port must be between 1 and 65535")
            if port.protocol not in PROTOCOLS:
                raise ValidationError("template.ports", port.protocol, f"protocol must be one of {', '.join(PROTOCOLS)}")
            if port.name:
                if not is_dns1123_label(port.name) or len(port.name) > MAX_PORT_NAME_LENGTH:
                    raise ValidationError(
                        "template.ports", port.name,
                        f"port name must be a DNS-1123 label of at most {MAX_PORT_NAME_LENGTH} characters",
                    )
                if port.name in seen_ports:
                    raise ValidationError("template.ports", port.name, "duplicate port name")
                seen_ports.add(port.name)

        validate_resources("resources", spec.resources)

    # =========================================================================
    # TEMPLATE / DEPLOYMENT HELPERS
    # =========================================================================

    async def render_preset(self, preset_id: str, params: Optional[Mapping[str, Any]] = None) -> ComputeSpec:
        """
        Produce a ComputeSpec bound to a preset.

        The compute id is left empty for the compute manager to fill in.
        ``params["resources"]`` may carry resource overrides, either as a
        ComputeResources/ResourceRequirements model or a plain mapping.
        """
        await self.get_preset(preset_id)

        spec = ComputeSpec(preset_id=preset_id, labels=compute_labels("", preset_id))

        overrides = (params or {}).get("resources")
        if overrides is not None:
            if isinstance(overrides, ResourceRequirements):
                overrides = overrides.model_dump()
            if not isinstance(overrides, Mapping):
                raise ValidationError("resources", overrides, "resource overrides must be a mapping")
            spec.resource_overrides = ComputeResources.model_validate(overrides)
            validate_resources("resources", spec.resource_overrides)

        return spec

    async def ensure_preset_deployment(self, preset_id: str) -> client.V1Deployment:
        """Return the preset's deployment. A missing preset is an error; nothing is created here."""
        return await self._get_deployment(preset_id, "ensure deployment")

    async def get_preset_deployment_status(self, preset_id: str) -> DeploymentStatus:
        deployment = await self._get_deployment(preset_id, "get deployment status")

        status = deployment.status
        if status is None:
            return DeploymentStatus()

        return DeploymentStatus(
            replicas=status.replicas or 0,
            ready_replicas=status.ready_replicas or 0,
            available_replicas=status.available_replicas or 0,
            updated_replicas=status.updated_replicas or 0,
            conditions=[
                DeploymentCondition(
                    type=c.type,
                    status=c.status,
                    reason=c.reason,
                    message=c.message,
                    last_update_time=c.last_update_time,
                )
                for c in status.conditions or []
            ],
        )

    async def _get_deployment(self, preset_id: str, operation: str) -> client.V1Deployment:
        try:
            return await self.deployment_ops.get_deployment(
                self.namespace, deployment_name_from_preset_id(preset_id)
            )
        except NotFoundError as e:
            raise PresetError(preset_id, operation, NotFoundError("preset", preset_id, self.namespace)) from e
        except OrchestratorError as e:
            raise PresetError(preset_id, operation, e) from e

    def _build_deployment(self, spec: PresetSpec) -> client.V1Deployment:
        labels = dict(spec.labels)
        labels.update(preset_labels(spec.preset_id))
        labels[LABEL_NAME] = label_safe(spec.name)
        if spec.version:
            labels[LABEL_VERSION] = spec.version

        annotations = dict(spec.annotations)
        annotations[ANNOTATION_DISPLAY_NAME] = spec.name
        if spec.description:
            annotations[ANNOTATION_DESCRIPTION] = spec.description

        selector = compute_labels(preset_id=spec.preset_id)
        pod_labels = dict(spec.labels)
        pod_labels.update(selector)

        return client.V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=client.V1ObjectMeta(
                name=deployment_name_from_preset_id(spec.preset_id),
                namespace=self.namespace,
                labels=labels,
                annotations=annotations,
            ),
            spec=client.V1DeploymentSpec(
                replicas=0,
                selector=client.V1LabelSelector(match_labels=selector),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=pod_labels),
                    spec=client.V1PodSpec(containers=[self._build_container(spec)]),
                ),
            ),
        )

    @staticmethod
    def _build_container(spec: PresetSpec) -> client.V1Container:
        template = spec.template
        return client.V1Container(
            name=CONTAINER_NAME,
            image=template.image,
            image_pull_policy=template.image_pull_policy or None,
            command=list(template.command) or None,
            args=list(template.args) or None,
            env=[client.V1EnvVar(name=e.name, value=e.value) for e in template.env] or None,
            ports=[
                client.V1ContainerPort(name=p.name, container_port=p.container_port, protocol=p.protocol)
                for p in template.ports
            ] or None,
            volume_mounts=[
                client.V1VolumeMount(
                    name=v.name,
                    mount_path=v.mount_path,
                    read_only=v.read_only,
                    sub_path=v.sub_path,
                )
                for v in template.volume_mounts
            ] or None,
            working_dir=template.working_dir,
            resources=client.V1ResourceRequirements(
                requests=dict(spec.resources.requests) or None,
                limits=dict(spec.resources.limits) or None,
            ),
        )

    def _build_preset_info(self, deployment: client.V1Deployment) -> PresetInfo:
        metadata = deployment.metadata
        labels = dict(metadata.labels or {})
        annotations = dict(metadata.annotations or {})

        preset_id = labels.get(LABEL_PRESET_ID) or preset_id_from_deployment_name(metadata.name)

        template = PresetTemplate()
        resources = ResourceRequirements()
        containers = deployment.spec.template.spec.containers if deployment.spec.template.spec else []
        if containers:
            container = containers[0]
            template = PresetTemplate(
                image=container.image or "",
                image_pull_policy=container.image_pull_policy or "",
                command=container.command or [],
                args=container.args or [],
                env=[EnvVar(name=e.name, value=e.value or "") for e in container.env or []],
                ports=[
                    ContainerPort(name=p.name, container_port=p.container_port, protocol=p.protocol or "TCP")
                    for p in container.ports or []
                ],
                volume_mounts=[
                    VolumeMount(
                        name=v.name,
                        mount_path=v.mount_path,
                        read_only=bool(v.read_only),
                        sub_path=v.sub_path,
                    )
                    for v in container.volume_mounts or []
                ],
                working_dir=container.working_dir,
            )
            if container.resources:
                resources = ResourceRequirements(
                    requests=_quantities(container.resources.requests),
                    limits=_quantities(container.resources.limits),
                )

        replicas = deployment.spec.replicas or 0
        created_at = metadata.creation_timestamp
        updated_at = _parse_timestamp(annotations.get(ANNOTATION_UPDATED_AT)) or created_at

        caller_labels = {
            k: v for k, v in labels.items()
            if k not in RESERVED_COMPUTE_LABELS and k not in (LABEL_NAME, LABEL_VERSION)
        }

        return PresetInfo(
            preset_id=preset_id,
            name=annotations.get(ANNOTATION_DISPLAY_NAME) or labels.get(LABEL_NAME, ""),
            description=annotations.get(ANNOTATION_DESCRIPTION, ""),
            version=labels.get(LABEL_VERSION, ""),
            template=template,
            resources=resources,
            labels=caller_labels,
            annotations={k: v for k, v in annotations.items() if k not in _INTERNAL_ANNOTATIONS},
            deployment_name=metadata.name,
            base_replicas=replicas,
            active_computes=replicas,
            created_at=created_at,
            updated_at=updated_at,
        )


def validate_resources(field: str, resources: ResourceRequirements) -> None:
    """Check every request/limit parses as a Kubernetes quantity."""
    for kind, values in (("requests", resources.requests), ("limits", resources.limits)):
        for name, quantity in values.items():
            try:
                parse_quantity(quantity)
            except (ValueError, ArithmeticError) as e:
                raise ValidationError(f"{field}.{kind}.{name}", quantity, "invalid resource quantity") from e


def _quantities(values: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {k: str(v) for k, v in (values or {}).items()}


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
