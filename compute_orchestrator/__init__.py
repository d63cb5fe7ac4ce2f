"""
Compute Orchestrator

Provisions sandbox computes on Kubernetes using only Deployment replica counts
and Pod labels: presets are zero-replica Deployments, computes are the pods
they scale up to.
"""

from .config import Settings, get_settings
from .errors import (
    ClusterAPIError,
    ComputeError,
    ConflictError,
    NotFoundError,
    OperationTimeoutError,
    OrchestratorError,
    PresetError,
    PresetInUseError,
    ValidationError,
    is_conflict,
    is_in_use,
    is_not_found,
    is_timeout,
    is_validation_error,
)
from .kubernetes import KubernetesClient, get_k8s_client
from .managers import (
    ComputeManager,
    DefaultComputeManager,
    DefaultPresetManager,
    ManagerFactory,
    PresetManager,
    create_managers,
)

__version__ = "0.1.0"
