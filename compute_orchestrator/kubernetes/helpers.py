"""
Kubernetes helpers shared by the client and the managers.

- Label selector formatting
- Pod readiness and port extraction
- Name / label key and value validation (DNS-1123, qualified names)
"""

import re
from typing import Dict, Mapping, Optional, Union

from kubernetes import client

# DNS-1123 label: lowercase alphanumeric + '-', must start and end alphanumeric
_DNS1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

# Label values: alphanumeric + '-', '_', '.', must start and end alphanumeric
_LABEL_VALUE = re.compile(r"^(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")

# Label and annotation keys: optional DNS-1123 subdomain prefix, then a name like a label value
_QUALIFIED_NAME = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_DNS1123_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

MAX_LABEL_LENGTH = 63
MAX_KEY_PREFIX_LENGTH = 253


def format_label_selector(selector: Optional[Union[Mapping[str, str], str]]) -> Optional[str]:
    """
    Render a selector for the API.

    Examples:
        {"app": "compute", "presetId": "web"} -> "app=compute,presetId=web"
        "app=compute,!computeId" -> "app=compute,!computeId"
        {} / None -> None (no selector)
    """
    if not selector:
        return None
    if isinstance(selector, str):
        return selector
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


def is_pod_ready(pod: Optional[client.V1Pod]) -> bool:
    """Check if a pod is ready."""
    if pod is None or pod.status is None or not pod.status.conditions:
        return False

    for condition in pod.status.conditions:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def pod_port_map(pod: client.V1Pod) -> Dict[str, int]:
    """Map port names to container ports. Unnamed ports are keyed ``port-<number>``."""
    ports: Dict[str, int] = {}
    if pod.spec is None:
        return ports

    for container in pod.spec.containers or []:
        for port in container.ports or []:
            key = port.name or f"port-{port.container_port}"
            ports[key] = port.container_port
    return ports


def is_dns1123_label(value: str) -> bool:
    return bool(value) and len(value) <= MAX_LABEL_LENGTH and bool(_DNS1123_LABEL.match(value))


def is_valid_label_value(value: str) -> bool:
    return len(value) <= MAX_LABEL_LENGTH and bool(_LABEL_VALUE.match(value))


def is_valid_label_key(key: str) -> bool:
    """Qualified name check shared by label and annotation keys, e.g. ``team`` or ``example.com/team``."""
    prefix, sep, name = key.rpartition("/")
    if sep and (not prefix or len(prefix) > MAX_KEY_PREFIX_LENGTH or not _DNS1123_SUBDOMAIN.match(prefix)):
        return False
    return bool(name) and len(name) <= MAX_LABEL_LENGTH and bool(_QUALIFIED_NAME.match(name))
