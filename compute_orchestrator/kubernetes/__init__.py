"""
Cluster resource access: async Pod and Deployment operations over the kubernetes client.
"""

from .client import KubernetesClient, get_k8s_client
from .helpers import format_label_selector, is_pod_ready, pod_port_map
from .operations import DeploymentOperations, LabelSelector, PodOperations

__all__ = [
    "KubernetesClient",
    "get_k8s_client",
    "PodOperations",
    "DeploymentOperations",
    "LabelSelector",
    "format_label_selector",
    "is_pod_ready",
    "pod_port_map",
]
