"""
Data model for presets and computes.

Presets are stored as Deployments and computes as Pods; these models are the
projections the managers hand back to callers. The label helpers at the bottom
define the discovery contract: changing a key breaks lookup of existing objects.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..config import Settings, get_settings


# =============================================================================
# Label contract
# =============================================================================

LABEL_APP = "app"
LABEL_PRESET_ID = "presetId"
LABEL_COMPUTE_ID = "computeId"
LABEL_NAME = "name"
LABEL_VERSION = "version"

APP_PRESET = "preset"
APP_COMPUTE = "compute"

ANNOTATION_DESCRIPTION = "description"
ANNOTATION_DISPLAY_NAME = "displayName"
ANNOTATION_UPDATED_AT = "updatedAt"
ANNOTATION_RESOURCE_OVERRIDES = "resourceOverrides"

DEPLOYMENT_NAME_PREFIX = "preset-"

# Labels a caller may never override on a compute pod
RESERVED_COMPUTE_LABELS = frozenset({LABEL_APP, LABEL_PRESET_ID, LABEL_COMPUTE_ID})


# =============================================================================
# Container template
# =============================================================================

class EnvVar(BaseModel):
    """Environment variable for the compute container."""
    name: str = Field(..., description="Variable name")
    value: str = Field(default="", description="Variable value")


class ContainerPort(BaseModel):
    """Port exposed by the compute container."""
    name: Optional[str] = Field(None, description="Port name (unnamed ports are reported as port-<number>)")
    container_port: int = Field(..., description="Port number inside the container")
    protocol: str = Field(default="TCP", description="TCP, UDP or SCTP")


class VolumeMount(BaseModel):
    name: str = Field(..., description="Volume name")
    mount_path: str = Field(..., description="Path inside the container")
    read_only: bool = Field(default=False)
    sub_path: Optional[str] = Field(None)


class PresetTemplate(BaseModel):
    """Container template shared by every compute of a preset."""
    image: str = Field(default="", description="Container image reference")
    image_pull_policy: str = Field(default="IfNotPresent", description="Always, IfNotPresent or Never")
    command: List[str] = Field(default_factory=list, description="Entrypoint override")
    args: List[str] = Field(default_factory=list, description="Entrypoint arguments")
    env: List[EnvVar] = Field(default_factory=list)
    ports: List[ContainerPort] = Field(default_factory=list)
    volume_mounts: List[VolumeMount] = Field(default_factory=list)
    working_dir: Optional[str] = Field(None)


class ResourceRequirements(BaseModel):
    """Resource requests/limits as Kubernetes quantity strings, e.g. {"cpu": "200m"}."""
    requests: Dict[str, str] = Field(default_factory=dict)
    limits: Dict[str, str] = Field(default_factory=dict)


class ComputeResources(ResourceRequirements):
    """Requests and limits of a compute's container, or the overrides asked for at create time."""


# =============================================================================
# Presets
# =============================================================================

class PresetSpec(BaseModel):
    """Specification for creating or updating a preset."""
    preset_id: str = Field(default="", description="Unique preset identifier (DNS-1123 label)")
    name: str = Field(default="", description="Human-readable preset name")
    description: str = Field(default="")
    version: str = Field(default="", description="Preset version, e.g. 1.0.0")
    template: PresetTemplate = Field(default_factory=PresetTemplate)
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    labels: Dict[str, str] = Field(default_factory=dict, description="Extra labels for the deployment and its pods")
    annotations: Dict[str, str] = Field(default_factory=dict)


class PresetInfo(PresetSpec):
    """A preset as stored in the cluster."""
    deployment_name: str = Field(..., description="Name of the backing deployment")
    base_replicas: int = Field(default=0, description="Replica count when the preset was read")
    active_computes: int = Field(default=0, description="Number of computes the deployment is sized for")
    created_at: Optional[datetime] = Field(None)
    updated_at: Optional[datetime] = Field(None)


class PresetFilters(BaseModel):
    preset_id: Optional[str] = None
    name: Optional[str] = None
    version: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)


class DeploymentCondition(BaseModel):
    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None
    last_update_time: Optional[datetime] = None


class DeploymentStatus(BaseModel):
    """Read-only view of a preset deployment's rollout state."""
    replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    updated_replicas: int = 0
    conditions: List[DeploymentCondition] = Field(default_factory=list)


# =============================================================================
# Computes
# =============================================================================

class ComputePhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class ComputeCondition(BaseModel):
    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None
    last_transition_time: Optional[datetime] = None


class ComputeStatus(BaseModel):
    phase: ComputePhase = ComputePhase.PENDING
    is_ready: bool = False
    message: str = ""
    conditions: List[ComputeCondition] = Field(default_factory=list)


class ComputeNetwork(BaseModel):
    pod_ip: Optional[str] = None
    host_ip: Optional[str] = None
    ports: Dict[str, int] = Field(default_factory=dict, description="Port name to container port")


class ComputeSpec(BaseModel):
    """Request to create a compute from a preset."""
    compute_id: str = Field(default="", description="Compute identifier (generated when empty)")
    preset_id: str = Field(default="", description="Preset to instantiate")
    labels: Dict[str, str] = Field(default_factory=dict, description="Extra labels written onto the claimed pod")
    annotations: Dict[str, str] = Field(default_factory=dict)
    resource_overrides: Optional[ComputeResources] = Field(None)


class ComputeInfo(BaseModel):
    """A compute as observed on its pod."""
    compute_id: str = Field(..., min_length=1)
    name: str
    preset_id: str = Field(..., min_length=1)
    deployment_name: str
    pod_name: str
    status: ComputeStatus = Field(default_factory=ComputeStatus)
    resources: ComputeResources = Field(default_factory=ComputeResources)
    network: ComputeNetwork = Field(default_factory=ComputeNetwork)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class ComputeFilters(BaseModel):
    preset_id: Optional[str] = None
    phase: Optional[ComputePhase] = None
    labels: Dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Helpers
# =============================================================================

def deployment_name_from_preset_id(preset_id: str) -> str:
    return DEPLOYMENT_NAME_PREFIX + preset_id


def preset_id_from_deployment_name(name: str) -> str:
    if name.startswith(DEPLOYMENT_NAME_PREFIX):
        return name[len(DEPLOYMENT_NAME_PREFIX):]
    return name


def preset_labels(preset_id: str = "") -> Dict[str, str]:
    """Labels identifying a preset deployment. An empty id selects every preset."""
    labels = {LABEL_APP: APP_PRESET}
    if preset_id:
        labels[LABEL_PRESET_ID] = preset_id
    return labels


def compute_labels(compute_id: str = "", preset_id: str = "") -> Dict[str, str]:
    """Labels identifying a compute pod. Empty ids are left out so the result doubles as a selector."""
    labels = {LABEL_APP: APP_COMPUTE}
    if preset_id:
        labels[LABEL_PRESET_ID] = preset_id
    if compute_id:
        labels[LABEL_COMPUTE_ID] = compute_id
    return labels


def label_safe(value: str) -> str:
    """
    Reduce free text to a valid label value.

    Examples:
        "Web Server" -> "Web-Server"
        "Node.js Environment" -> "Node.js-Environment"
    """
    value = re.sub(r"[^A-Za-z0-9_.-]+", "-", value.strip())
    return value[:63].strip("-_.")


def new_resource_list(cpu: str = "", memory: str = "") -> Dict[str, str]:
    resources = {}
    if cpu:
        resources["cpu"] = cpu
    if memory:
        resources["memory"] = memory
    return resources


# =============================================================================
# Manager configuration
# =============================================================================

@dataclass
class ManagerConfig:
    """Settings shared by the preset and compute managers."""
    namespace: str = "default"
    logger: Optional[logging.Logger] = None
    claim_timeout: float = 60.0
    claim_poll_interval: float = 2.0
    cache_refresh_interval: float = 30.0
    replica_update_max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> "ManagerConfig":
        settings = settings or get_settings()
        return cls(
            namespace=settings.k8s_namespace,
            logger=logger,
            claim_timeout=settings.compute_claim_timeout_seconds,
            claim_poll_interval=settings.compute_claim_poll_interval_seconds,
            cache_refresh_interval=settings.compute_cache_refresh_interval_seconds,
            replica_update_max_attempts=settings.replica_update_max_attempts,
        )
