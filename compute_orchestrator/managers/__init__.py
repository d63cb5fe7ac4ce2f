"""
Preset and compute managers.

Presets are zero-replica Deployments used as container templates; computes are
individual pods of those Deployments, identified by their computeId label.
"""

from .cache import ComputeCache
from .computes import ComputeManager, DefaultComputeManager
from .defaults import DEFAULT_PRESET_ID, get_default_presets, initialize_default_presets
from .factory import ManagerFactory, create_managers
from .presets import DefaultPresetManager, PresetManager
from .types import (
    ComputeCondition,
    ComputeFilters,
    ComputeInfo,
    ComputeNetwork,
    ComputePhase,
    ComputeResources,
    ComputeSpec,
    ComputeStatus,
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
    new_resource_list,
    preset_labels,
)

__all__ = [
    "ComputeCache",
    "ComputeManager",
    "DefaultComputeManager",
    "PresetManager",
    "DefaultPresetManager",
    "ManagerFactory",
    "create_managers",
    "DEFAULT_PRESET_ID",
    "get_default_presets",
    "initialize_default_presets",
    "ManagerConfig",
    "ComputeCondition",
    "ComputeFilters",
    "ComputeInfo",
    "ComputeNetwork",
    "ComputePhase",
    "ComputeResources",
    "ComputeSpec",
    "ComputeStatus",
    "ContainerPort",
    "DeploymentCondition",
    "DeploymentStatus",
    "EnvVar",
    "PresetFilters",
    "PresetInfo",
    "PresetSpec",
    "PresetTemplate",
    "ResourceRequirements",
    "VolumeMount",
    "compute_labels",
    "deployment_name_from_preset_id",
    "new_resource_list",
    "preset_labels",
]
