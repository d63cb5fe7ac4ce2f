"""
Manager Factory

Wires a Kubernetes client (or any object implementing both PodOperations and
DeploymentOperations) into a PresetManager / ComputeManager pair that shares
one ManagerConfig.
"""

import logging
from typing import Optional, Tuple

from ..config import Settings, get_settings
from ..kubernetes.client import get_k8s_client
from ..kubernetes.operations import DeploymentOperations, PodOperations
from .cache import ComputeCache
from .computes import ComputeManager, DefaultComputeManager
from .defaults import initialize_default_presets
from .presets import DefaultPresetManager, PresetManager
from .types import ManagerConfig

logger = logging.getLogger(__name__)


class ManagerFactory:
    """
    Creates managers bound to one cluster client and configuration.

    Example:
        factory = ManagerFactory(KubernetesClient(namespace="sandboxes"))
        presets, computes = factory.create_managers()
    """

    def __init__(self, k8s_client, config: Optional[ManagerConfig] = None):
        if not isinstance(k8s_client, PodOperations) or not isinstance(k8s_client, DeploymentOperations):
            raise TypeError("k8s_client must implement both PodOperations and DeploymentOperations")

        self.k8s_client = k8s_client
        self.config = config or ManagerConfig.from_settings()

    def set_logger(self, logger: logging.Logger) -> None:
        """Use ``logger`` for managers created from now on."""
        self.config.logger = logger

    def create_preset_manager(self) -> PresetManager:
        return DefaultPresetManager(self.k8s_client, self.config)

    def create_compute_manager(
        self,
        preset_manager: Optional[PresetManager] = None,
        cache: Optional[ComputeCache] = None,
    ) -> ComputeManager:
        return DefaultComputeManager(
            self.k8s_client,
            self.k8s_client,
            preset_manager or self.create_preset_manager(),
            self.config,
            cache=cache,
        )

    def create_managers(self) -> Tuple[PresetManager, ComputeManager]:
        """Create a preset manager and a compute manager that uses it."""
        preset_manager = self.create_preset_manager()
        return preset_manager, self.create_compute_manager(preset_manager)


async def create_managers(
    settings: Optional[Settings] = None,
    k8s_client=None,
    manager_logger: Optional[logging.Logger] = None,
) -> Tuple[PresetManager, ComputeManager]:
    """
    Build both managers from settings and start the compute cache refresh.

    Seeds the default preset catalog when ``initialize_default_presets`` is
    enabled. The caller owns the compute manager and must ``close()`` it.
    """
    settings = settings or get_settings()
    k8s_client = k8s_client or get_k8s_client()

    factory = ManagerFactory(k8s_client, ManagerConfig.from_settings(settings, logger=manager_logger))
    preset_manager, compute_manager = factory.create_managers()

    if settings.initialize_default_presets:
        actions = await initialize_default_presets(preset_manager)
        changed = [preset_id for preset_id, action in actions.items() if action != "unchanged"]
        if changed:
            logger.info(f"[PRESETS] Default presets synced: {', '.join(changed)}")

    await compute_manager.start()
    return preset_manager, compute_manager
