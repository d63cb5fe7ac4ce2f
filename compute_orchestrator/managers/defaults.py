"""
Built-in preset catalog.

``initialize_default_presets`` makes the cluster match this catalog: missing
presets are created, presets whose version differs are updated (keeping their
replica count), everything else is left alone. Running it twice is a no-op.
"""

import logging
from typing import Dict, List

from ..errors import OrchestratorError, is_not_found
from .presets import PresetManager
from .types import ContainerPort, EnvVar, PresetSpec, PresetTemplate, ResourceRequirements, new_resource_list

logger = logging.getLogger(__name__)

DEFAULT_PRESET_ID = "default"


def get_default_presets() -> List[PresetSpec]:
    """Return the built-in preset specifications."""
    return [
        PresetSpec(
            preset_id="default",
            name="Default Sandbox",
            description="Default sandbox environment with Node.js, Python, and dev tools",
            version="1.2.0",
            template=PresetTemplate(
                image="node:18-bullseye",
                image_pull_policy="IfNotPresent",
                command=["/bin/bash"],
                args=[
                    "-c",
                    "apt-get update && apt-get install -y python3 python3-pip python3-venv git curl wget vim nano"
                    " && npm install -g nodemon typescript ts-node && sleep infinity",
                ],
                env=[
                    EnvVar(name="NODE_ENV", value="development"),
                    EnvVar(name="DEBIAN_FRONTEND", value="noninteractive"),
                    EnvVar(name="PYTHONUNBUFFERED", value="1"),
                ],
                ports=[
                    ContainerPort(name="http", container_port=3000),
                    ContainerPort(name="api", container_port=8000),
                    ContainerPort(name="debug", container_port=9229),
                    ContainerPort(name="vite", container_port=5173),
                ],
            ),
            resources=ResourceRequirements(
                requests=new_resource_list("200m", "256Mi"),
                limits=new_resource_list("1000m", "1Gi"),
            ),
            labels={"preset-type": "default", "managed-by": "computesdk", "runtime": "node-python"},
        ),
        PresetSpec(
            preset_id="web-server",
            name="Web Server",
            description="Nginx web server for hosting static content or reverse proxy",
            version="1.0.0",
            template=PresetTemplate(
                image="nginx:alpine",
                ports=[ContainerPort(name="http", container_port=80)],
                env=[EnvVar(name="NGINX_PORT", value="80")],
            ),
            resources=ResourceRequirements(
                requests=new_resource_list("50m", "64Mi"),
                limits=new_resource_list("200m", "256Mi"),
            ),
            labels={"category": "web", "preset-type": "application", "managed-by": "computesdk"},
        ),
        PresetSpec(
            preset_id="database",
            name="Database Server",
            description="PostgreSQL database server",
            version="1.0.0",
            template=PresetTemplate(
                image="postgres:13-alpine",
                ports=[ContainerPort(name="postgres", container_port=5432)],
                env=[
                    EnvVar(name="POSTGRES_DB", value="app"),
                    EnvVar(name="POSTGRES_USER", value="user"),
                    EnvVar(name="POSTGRES_PASSWORD", value="password"),
                    EnvVar(name="PGDATA", value="/var/lib/postgresql/data/pgdata"),
                ],
            ),
            resources=ResourceRequirements(
                requests=new_resource_list("200m", "256Mi"),
                limits=new_resource_list("1000m", "1Gi"),
            ),
            labels={"category": "database", "preset-type": "application", "managed-by": "computesdk"},
        ),
        PresetSpec(
            preset_id="python-only",
            name="Python Environment",
            description="Python 3.11 environment with common data science libraries",
            version="1.0.0",
            template=PresetTemplate(
                image="python:3.11-bullseye",
                command=["/bin/bash"],
                args=["-c", "pip install jupyter pandas numpy matplotlib requests flask fastapi && sleep infinity"],
                env=[
                    EnvVar(name="PYTHONUNBUFFERED", value="1"),
                    EnvVar(name="DEBIAN_FRONTEND", value="noninteractive"),
                ],
                ports=[
                    ContainerPort(name="jupyter", container_port=8888),
                    ContainerPort(name="flask", container_port=5000),
                    ContainerPort(name="fastapi", container_port=8000),
                ],
            ),
            resources=ResourceRequirements(
                requests=new_resource_list("200m", "256Mi"),
                limits=new_resource_list("1000m", "1Gi"),
            ),
            labels={
                "category": "development",
                "preset-type": "application",
                "managed-by": "computesdk",
                "runtime": "python",
            },
        ),
        PresetSpec(
            preset_id="node-only",
            name="Node.js Environment",
            description="Node.js 18 environment with common development tools",
            version="1.0.0",
            template=PresetTemplate(
                image="node:18-bullseye",
                command=["/bin/bash"],
                args=["-c", "npm install -g typescript ts-node nodemon @types/node express && sleep infinity"],
                env=[
                    EnvVar(name="NODE_ENV", value="development"),
                    EnvVar(name="DEBIAN_FRONTEND", value="noninteractive"),
                ],
                ports=[
                    ContainerPort(name="http", container_port=3000),
                    ContainerPort(name="debug", container_port=9229),
                    ContainerPort(name="vite", container_port=5173),
                ],
            ),
            resources=ResourceRequirements(
                requests=new_resource_list("150m", "192Mi"),
                limits=new_resource_list("750m", "768Mi"),
            ),
            labels={
                "category": "development",
                "preset-type": "application",
                "managed-by": "computesdk",
                "runtime": "node",
            },
        ),
    ]


async def initialize_default_presets(preset_manager: PresetManager) -> Dict[str, str]:
    """
    Ensure every built-in preset exists at its catalog version.

    Returns:
        Mapping of preset id to the action taken: "created", "updated" or "unchanged"
    """
    if preset_manager is None:
        raise ValueError("preset manager is required")

    actions = {}
    for spec in get_default_presets():
        actions[spec.preset_id] = await _ensure_preset(preset_manager, spec)
    return actions


async def _ensure_preset(preset_manager: PresetManager, spec: PresetSpec) -> str:
    try:
        existing = await preset_manager.get_preset(spec.preset_id)
    except OrchestratorError as e:
        if not is_not_found(e):
            raise
        await preset_manager.create_preset(spec)
        logger.info(f"[PRESETS] Created default preset {spec.preset_id} (v{spec.version})")
        return "created"

    if existing.version != spec.version:
        await preset_manager.update_preset(spec.preset_id, spec)
        logger.info(f"[PRESETS] Updated preset {spec.preset_id} {existing.version} -> {spec.version}")
        return "updated"

    logger.debug(f"[PRESETS] Preset {spec.preset_id} already exists (v{existing.version})")
    return "unchanged"
