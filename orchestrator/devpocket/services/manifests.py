"""
Kubernetes manifests for user environments.

One environment is made of:
- PVC: workspace and tmux state
- ConfigMap: startup.sh (creates the devpocket user, runs startup commands, keeps PID 1 alive)
- Deployment: single replica running startup.sh; scaled to 0/1 for stop/start
- Service: ClusterIP exposing the app port and SSH
"""

import shlex
from typing import Dict, List, Optional

from kubernetes import client

APP_NAME = "devpocket"
ENVIRONMENT_LABEL = "devpocket.io/environment"
SSH_PORT = 22
STARTUP_SCRIPT_KEY = "startup.sh"


# =============================================================================
# Labels
# =============================================================================

def get_standard_labels(
    component: str,
    environment_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Dict[str, str]:
    """
    Get standard labels for environment resources.

    Args:
        component: Component name (storage, config, environment, service)
        environment_id: Optional environment id
        user_id: Optional owner id

    Returns:
        Dict of labels
    """
    labels = {
        "app.kubernetes.io/name": APP_NAME,
        "app.kubernetes.io/part-of": "devpocket-environments",
        "app.kubernetes.io/component": component,
    }

    if environment_id:
        labels["devpocket.io/environment-id"] = str(environment_id)

    if user_id:
        labels["devpocket.io/user-id"] = str(user_id)

    return labels


def get_selector_labels(deployment_name: str) -> Dict[str, str]:
    """Labels selecting the environment pod (Deployment selector, Service selector, pod lookup)."""
    return {ENVIRONMENT_LABEL: deployment_name}


# =============================================================================
# Namespace, PVC and ConfigMap
# =============================================================================

def create_namespace_manifest(namespace: str, user_id: str) -> client.V1Namespace:
    return client.V1Namespace(
        metadata=client.V1ObjectMeta(
            name=namespace,
            labels={
                "app.kubernetes.io/name": APP_NAME,
                "app.kubernetes.io/part-of": "devpocket-environments",
                "devpocket.io/user-id": str(user_id),
            },
        )
    )


def create_pvc_manifest(
    namespace: str,
    pvc_name: str,
    environment_id: str,
    size: str,
    storage_class: Optional[str] = None,
    access_mode: str = "ReadWriteOnce",
) -> client.V1PersistentVolumeClaim:
    """
    Create PVC manifest for the environment workspace.

    Args:
        storage_class: StorageClass to use; None/empty uses the cluster default
    """
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=pvc_name,
            namespace=namespace,
            labels=get_standard_labels("storage", environment_id),
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            storage_class_name=storage_class or None,
            access_modes=[access_mode],
            resources=client.V1VolumeResourceRequirements(
                requests={"storage": size}
            ),
        ),
    )


def build_startup_script(startup_commands: List[str]) -> str:
    """
    Render startup.sh.

    Commands run as root before the tmux session starts; the script ends with
    an immortal ``tail -f`` so the pod stays up while users work in tmux.
    """
    lines = [
        "#!/bin/bash",
        "set -e",
        "",
        "# Create user and workspace",
        "useradd -m -s /bin/bash devpocket || true",
        "mkdir -p /home/devpocket/.tmux",
        "chown -R devpocket:devpocket /home/devpocket",
        "",
        "# Install tmux if not present",
        "which tmux || (apt-get update && apt-get install -y tmux)",
        "",
        "# Run startup commands",
    ]
    for command in startup_commands:
        lines.append(f"echo {shlex.quote('Running: ' + command)} && {command}")
    lines += [
        "",
        "# Start tmux session",
        'su - devpocket -c "tmux new-session -d -s main"',
        "",
        "# Keep container running",
        "tail -f /dev/null",
    ]
    return "\n".join(lines)


def create_startup_configmap_manifest(
    namespace: str,
    configmap_name: str,
    environment_id: str,
    startup_commands: List[str],
) -> client.V1ConfigMap:
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=configmap_name,
            namespace=namespace,
            labels=get_standard_labels("config", environment_id),
        ),
        data={STARTUP_SCRIPT_KEY: build_startup_script(startup_commands)},
    )


# =============================================================================
# Deployment and Service
# =============================================================================

def create_environment_deployment(
    namespace: str,
    deployment_name: str,
    environment_id: str,
    user_id: str,
    image: str,
    port: int,
    cpu: str,
    memory: str,
    pvc_name: str,
    configmap_name: str,
    environment_variables: Optional[Dict[str, str]] = None,
    container_name: str = "devpocket",
    image_pull_policy: str = "IfNotPresent",
) -> client.V1Deployment:
    """
    Create the environment Deployment manifest.

    The workspace PVC is mounted twice (workspace and tmux state) and the
    startup ConfigMap is mounted executable at /config.

    Returns:
        V1Deployment manifest
    """
    labels = get_standard_labels("environment", environment_id, user_id)
    selector_labels = get_selector_labels(deployment_name)

    container = client.V1Container(
        name=container_name,
        image=image,
        image_pull_policy=image_pull_policy,
        command=["/bin/bash", f"/config/{STARTUP_SCRIPT_KEY}"],
        ports=[
            client.V1ContainerPort(container_port=port, name="app-port"),
            client.V1ContainerPort(container_port=SSH_PORT, name="ssh"),
        ],
        env=[
            client.V1EnvVar(name=name, value=str(value))
            for name, value in (environment_variables or {}).items()
        ],
        resources=client.V1ResourceRequirements(
            requests={"cpu": cpu, "memory": memory},
            limits={"cpu": cpu, "memory": memory},
        ),
        volume_mounts=[
            client.V1VolumeMount(name="workspace", mount_path="/home/devpocket/workspace"),
            client.V1VolumeMount(name="tmux-data", mount_path="/home/devpocket/.tmux"),
            client.V1VolumeMount(name="startup-config", mount_path="/config"),
        ],
        # Starts as root to create the devpocket user, then switches via su
        security_context=client.V1SecurityContext(
            run_as_user=0,
            allow_privilege_escalation=True,
        ),
    )

    pod_spec = client.V1PodSpec(
        containers=[container],
        volumes=[
            client.V1Volume(
                name="workspace",
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=pvc_name),
            ),
            client.V1Volume(
                name="tmux-data",
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=pvc_name),
            ),
            client.V1Volume(
                name="startup-config",
                config_map=client.V1ConfigMapVolumeSource(name=configmap_name, default_mode=0o755),
            ),
        ],
        restart_policy="Always",
    )

    return client.V1Deployment(
        metadata=client.V1ObjectMeta(
            name=deployment_name,
            namespace=namespace,
            labels=labels,
        ),
        spec=client.V1DeploymentSpec(
            replicas=1,
            # ReadWriteOnce workspace cannot be attached to two pods at once
            strategy=client.V1DeploymentStrategy(type="Recreate"),
            selector=client.V1LabelSelector(match_labels=selector_labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels={**labels, **selector_labels}),
                spec=pod_spec,
            ),
        ),
    )


def create_service_manifest(
    namespace: str,
    service_name: str,
    deployment_name: str,
    environment_id: str,
    port: int,
) -> client.V1Service:
    """Create ClusterIP Service exposing the app port and SSH of one environment."""
    return client.V1Service(
        metadata=client.V1ObjectMeta(
            name=service_name,
            namespace=namespace,
            labels=get_standard_labels("service", environment_id),
        ),
        spec=client.V1ServiceSpec(
            selector=get_selector_labels(deployment_name),
            ports=[
                client.V1ServicePort(port=port, target_port=port, protocol="TCP", name="app-port"),
                client.V1ServicePort(port=SSH_PORT, target_port=SSH_PORT, protocol="TCP", name="ssh"),
            ],
            type="ClusterIP",
        ),
    )
