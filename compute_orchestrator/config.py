from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

class Settings(BaseSettings):
    # ==========================================================================
    # Kubernetes Connection
    # ==========================================================================
    # Namespace holding preset deployments and compute pods
    k8s_namespace: str = "default"

    # Explicit kubeconfig path. Empty = in-cluster config, falling back to ~/.kube/config
    k8s_kubeconfig_path: str = ""

    # Deadline applied to every cluster API call that doesn't carry its own
    k8s_default_timeout_seconds: float = 30.0

    # ==========================================================================
    # Compute Lifecycle Timing
    # ==========================================================================
    # How long create_compute polls for a claimable pod after scaling up
    compute_claim_timeout_seconds: float = 60.0
    compute_claim_poll_interval_seconds: float = 2.0

    # Poll interval used while waiting for a pod's Ready condition
    pod_ready_poll_interval_seconds: float = 1.0

    # Background compute cache refresh (0 disables the refresh task)
    compute_cache_refresh_interval_seconds: float = 30.0

    # Attempts for a replica-count update that keeps hitting resourceVersion conflicts
    replica_update_max_attempts: int = 5

    # ==========================================================================
    # Startup
    # ==========================================================================
    # Create/upgrade the built-in preset catalog when managers are built by the factory
    initialize_default_presets: bool = False

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra fields from .env file
        case_sensitive=False,
    )

@lru_cache()
def get_settings():
    return Settings()
