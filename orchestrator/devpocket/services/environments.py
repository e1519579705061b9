"""
Environment Orchestrator

Lifecycle of user development environments on remote clusters:

    create  -> namespace, PVC, startup ConfigMap, Deployment, Service  (CREATING/ERROR -> RUNNING)
    start   -> scale Deployment to 1                                   (STOPPED/ERROR -> RUNNING)
    stop    -> scale Deployment to 0                                   (RUNNING -> STOPPED)
    delete  -> remove every environment object                        (* -> DELETING -> TERMINATED)

Mutating operations raise a DevPocketError subclass on unrecoverable failure
after a best-effort ERROR status write. Read-only queries (info, logs) never
raise; they degrade to a safe result and log the real cause.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from ..config import get_settings
from ..errors import (
    DevPocketError,
    EnvironmentNotFoundError,
    EnvironmentStateError,
    KubernetesError,
    serialize_error,
)
from ..models import Environment, EnvironmentStatus, can_transition
from ..schemas import (
    CommandFailed,
    CommandSucceeded,
    EnvironmentCreateOptions,
    EnvironmentInfo,
    LogsAvailable,
    LogsUnavailable,
)
from ..utils.resource_naming import get_environment_resource_names, get_internal_url
from . import manifests
from .cluster_client import ClusterClient
from .connection import ClusterConnectionManager
from .datastore import Datastore
from .retry import RetryPolicy, classify_error

logger = logging.getLogger(__name__)

POD_PHASE_STATUS = {
    "Running": EnvironmentStatus.RUNNING,
    "Pending": EnvironmentStatus.CREATING,
    "Failed": EnvironmentStatus.ERROR,
    "Succeeded": EnvironmentStatus.STOPPED,
}

# Failures of the request itself; the environment is left untouched
_CALLER_ERRORS = (EnvironmentNotFoundError, EnvironmentStateError)


def _wrap_error(message: str, error: Exception) -> DevPocketError:
    """Re-create ``error`` as its taxonomy class with an operation-specific message."""
    error_class = classify_error(error)
    return error_class(f"{message}: {error}")


class EnvironmentOrchestrator:
    """Runs environment lifecycle operations against the environment's cluster."""

    def __init__(
        self,
        datastore: Datastore,
        connection_manager: ClusterConnectionManager,
        retry_policy: RetryPolicy,
        settings=None,
    ):
        self.datastore = datastore
        self.connection_manager = connection_manager
        self.retry_policy = retry_policy
        self.settings = settings or get_settings()

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _load_environment(self, environment_id: str) -> Environment:
        environment = await self.datastore.get_environment(environment_id)
        if environment is None:
            raise EnvironmentNotFoundError(f"Environment {environment_id} not found")
        return environment

    def _resource_names(self, environment: Environment) -> Dict[str, str]:
        """Computed object names, overridden by the names recorded at provisioning."""
        names = get_environment_resource_names(
            environment.user_id, environment.id, self.settings.k8s_namespace_prefix
        )
        if environment.kubernetes_namespace:
            names["namespace"] = environment.kubernetes_namespace
        if environment.kubernetes_deployment_name:
            names["deployment"] = environment.kubernetes_deployment_name
        if environment.kubernetes_service_name:
            names["service"] = environment.kubernetes_service_name
        return names

    @staticmethod
    def _log_context(environment: Environment, **extra: Any) -> Dict[str, Any]:
        return {"environment_id": environment.id, "cluster_id": environment.cluster_id, **extra}

    async def _get_client(self, environment: Environment) -> ClusterClient:
        return await self.retry_policy.retry_operation(
            lambda: self.connection_manager.get_client(environment.cluster_id),
            "Get cluster client",
            self._log_context(environment),
        )

    async def _call(
        self,
        label: str,
        context: Dict[str, Any],
        func: Callable[..., Any],
        **kwargs: Any,
    ) -> Any:
        """Run a blocking Kubernetes API call in a worker thread, with retries."""
        return await self.retry_policy.retry_operation(
            lambda: asyncio.to_thread(func, **kwargs), label, context
        )

    async def _create_resource(
        self,
        kind: str,
        resource_name: str,
        context: Dict[str, Any],
        create: Callable[..., Any],
        **kwargs: Any,
    ) -> None:
        """Create one object; ``kwargs`` go to the API call unchanged."""
        async def create_once() -> None:
            try:
                await asyncio.to_thread(create, **kwargs)
                logger.info(f"[ENV] Created {kind}: {resource_name}")
            except ApiException as e:
                if e.status != 409:
                    raise
                logger.info(f"[ENV] {kind} {resource_name} already exists, reusing it")

        await self.retry_policy.retry_operation(
            create_once, f"Create {kind}", {**context, "name": resource_name}
        )

    async def _delete_resource(
        self,
        kind: str,
        resource_name: str,
        context: Dict[str, Any],
        delete: Callable[..., Any],
        **kwargs: Any,
    ) -> None:
        """Delete one object; ``kwargs`` (including ``name=``) go to the API call unchanged."""
        async def delete_once() -> None:
            try:
                await asyncio.to_thread(delete, **kwargs)
                logger.info(f"[ENV] Deleted {kind}: {resource_name}")
            except ApiException as e:
                if e.status != 404:
                    raise
                logger.debug(f"[ENV] {kind} {resource_name} already gone")

        await self.retry_policy.retry_operation(
            delete_once, f"Delete {kind}", {**context, "name": resource_name}
        )

    async def _find_pod(self, cluster_client: ClusterClient, names: Dict[str, str], context: Dict[str, Any]):
        """Return the environment pod (running ones first), or None."""
        pods = await self._call(
            "List environment pods",
            context,
            cluster_client.core_v1.list_namespaced_pod,
            namespace=names["namespace"],
            label_selector=f"{manifests.ENVIRONMENT_LABEL}={names['deployment']}",
        )
        candidates = [pod for pod in pods.items or [] if not pod.metadata.deletion_timestamp]
        if not candidates:
            return None
        running = [pod for pod in candidates if pod.status and pod.status.phase == "Running"]
        return (running or candidates)[0]

    async def _record_failure(self, environment_id: str, operation: str, error: Exception) -> None:
        """
        Best-effort ERROR status write after a failed mutating operation.

        A failure here is logged and dropped so it never replaces ``error``.
        """
        details = serialize_error(error)
        logger.error(
            f"[ENV] Failed to {operation} environment {environment_id}: "
            f"{details['name']}: {details['message']}\n{details['stack']}"
        )
        try:
            await self.datastore.update_environment(
                environment_id,
                status=EnvironmentStatus.ERROR,
                last_error=f"{details['name']}: {details['message']}",
            )
        except Exception as status_error:
            logger.error(
                f"[ENV] Could not record ERROR status for environment {environment_id}: {status_error}"
            )

    async def _run_mutation(
        self,
        environment_id: str,
        operation: str,
        action: Callable[[], Awaitable[Any]],
    ) -> Any:
        try:
            return await action()
        except _CALLER_ERRORS:
            raise
        except Exception as e:
            await self._record_failure(environment_id, operation, e)
            raise _wrap_error(f"Failed to {operation} environment", e) from e

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def create_environment(self, options: EnvironmentCreateOptions) -> EnvironmentInfo:
        """
        Provision the cluster objects of an existing environment row.

        The row must be CREATING (first provisioning) or ERROR (re-provisioning).
        Objects that already exist are reused.

        Raises:
            EnvironmentNotFoundError: Unknown environment id
            EnvironmentStateError: Environment is not CREATING or ERROR
            DevPocketError: Any other failure, after the row was set to ERROR
        """
        environment_id = options.environment_id

        async def provision() -> EnvironmentInfo:
            environment = await self._load_environment(environment_id)
            if environment.status not in (EnvironmentStatus.CREATING.value, EnvironmentStatus.ERROR.value):
                raise EnvironmentStateError(
                    f"Cannot create environment {environment_id} in status {environment.status}"
                )

            # The row's owner decides the namespace, whatever the request says
            owner_id = environment.user_id
            if options.user_id != owner_id:
                logger.warning(
                    f"[ENV] Create request for environment {environment_id} names user {options.user_id}, "
                    f"provisioning for owner {owner_id}"
                )

            logger.info(f"[ENV] Creating environment {environment_id} on cluster {environment.cluster_id}")
            cluster_client = await self._get_client(environment)

            names = get_environment_resource_names(
                owner_id, environment_id, self.settings.k8s_namespace_prefix
            )
            namespace = names["namespace"]
            context = self._log_context(environment, namespace=namespace)

            # Recorded before the first remote create so delete can clean up a partial provisioning
            await self.datastore.update_environment(
                environment_id,
                kubernetes_namespace=namespace,
                kubernetes_deployment_name=names["deployment"],
                kubernetes_service_name=names["service"],
            )

            await self._ensure_namespace(cluster_client, namespace, owner_id, context)

            await self._create_resource(
                "PVC", names["pvc"], context,
                cluster_client.core_v1.create_namespaced_persistent_volume_claim,
                namespace=namespace,
                body=manifests.create_pvc_manifest(
                    namespace=namespace,
                    pvc_name=names["pvc"],
                    environment_id=environment_id,
                    size=options.resources.storage,
                    storage_class=self.settings.k8s_storage_class,
                ),
            )
            await self._create_resource(
                "ConfigMap", names["configmap"], context,
                cluster_client.core_v1.create_namespaced_config_map,
                namespace=namespace,
                body=manifests.create_startup_configmap_manifest(
                    namespace=namespace,
                    configmap_name=names["configmap"],
                    environment_id=environment_id,
                    startup_commands=options.startup_commands,
                ),
            )
            await self._create_resource(
                "Deployment", names["deployment"], context,
                cluster_client.apps_v1.create_namespaced_deployment,
                namespace=namespace,
                body=manifests.create_environment_deployment(
                    namespace=namespace,
                    deployment_name=names["deployment"],
                    environment_id=environment_id,
                    user_id=owner_id,
                    image=options.docker_image,
                    port=options.port,
                    cpu=options.resources.cpu,
                    memory=options.resources.memory,
                    pvc_name=names["pvc"],
                    configmap_name=names["configmap"],
                    environment_variables=options.environment_variables,
                    container_name=self.settings.k8s_container_name,
                    image_pull_policy=self.settings.k8s_image_pull_policy,
                ),
            )
            await self._create_resource(
                "Service", names["service"], context,
                cluster_client.core_v1.create_namespaced_service,
                namespace=namespace,
                body=manifests.create_service_manifest(
                    namespace=namespace,
                    service_name=names["service"],
                    deployment_name=names["deployment"],
                    environment_id=environment_id,
                    port=options.port,
                ),
            )

            internal_url = get_internal_url(names["service"], namespace, options.port)
            await self.datastore.update_environment(
                environment_id,
                status=EnvironmentStatus.RUNNING,
                kubernetes_namespace=namespace,
                kubernetes_deployment_name=names["deployment"],
                kubernetes_service_name=names["service"],
                external_url=internal_url,
                last_error=None,
            )

            logger.info(f"[ENV] Environment {environment_id} created in namespace {namespace}")
            return EnvironmentInfo(
                status=EnvironmentStatus.RUNNING.value,
                namespace=namespace,
                deployment_name=names["deployment"],
                service_name=names["service"],
                internal_url=internal_url,
            )

        return await self._run_mutation(environment_id, "create", provision)

    async def _ensure_namespace(
        self,
        cluster_client: ClusterClient,
        namespace: str,
        user_id: str,
        context: Dict[str, Any],
    ) -> None:
        async def ensure() -> None:
            try:
                await asyncio.to_thread(cluster_client.core_v1.read_namespace, name=namespace)
                return
            except ApiException as e:
                if e.status != 404:
                    raise
            try:
                await asyncio.to_thread(
                    cluster_client.core_v1.create_namespace,
                    body=manifests.create_namespace_manifest(namespace, user_id),
                )
                logger.info(f"[ENV] Created namespace: {namespace}")
            except ApiException as e:
                if e.status != 409:
                    raise

        await self.retry_policy.retry_operation(ensure, "Ensure namespace", context)

    async def start_environment(self, environment_id: str) -> EnvironmentInfo:
        """Scale the environment Deployment to one replica."""
        return await self._scale_environment(environment_id, EnvironmentStatus.RUNNING, 1, "start")

    async def stop_environment(self, environment_id: str) -> EnvironmentInfo:
        """Scale the environment Deployment to zero; the workspace PVC is kept."""
        return await self._scale_environment(environment_id, EnvironmentStatus.STOPPED, 0, "stop")

    async def _scale_environment(
        self,
        environment_id: str,
        target: EnvironmentStatus,
        replicas: int,
        operation: str,
    ) -> EnvironmentInfo:
        async def scale() -> EnvironmentInfo:
            environment = await self._load_environment(environment_id)
            names = self._resource_names(environment)

            if environment.status == target.value:
                logger.info(f"[ENV] Environment {environment_id} already {target.value}")
                return EnvironmentInfo(
                    status=target.value,
                    namespace=names["namespace"],
                    deployment_name=names["deployment"],
                    service_name=names["service"],
                    internal_url=environment.external_url,
                )
            if not can_transition(environment.status, target):
                raise EnvironmentStateError(
                    f"Cannot {operation} environment {environment_id} in status {environment.status}"
                )
            if not environment.kubernetes_namespace:
                raise EnvironmentStateError(f"Environment {environment_id} has not been provisioned")

            cluster_client = await self._get_client(environment)
            await self._call(
                "Scale deployment",
                self._log_context(environment, namespace=names["namespace"], replicas=replicas),
                cluster_client.apps_v1.patch_namespaced_deployment_scale,
                name=names["deployment"],
                namespace=names["namespace"],
                body={"spec": {"replicas": replicas}},
            )
            await self.datastore.update_environment(environment_id, status=target, last_error=None)
            logger.info(f"[ENV] Environment {environment_id} {target.value}")
            return EnvironmentInfo(
                status=target.value,
                namespace=names["namespace"],
                deployment_name=names["deployment"],
                service_name=names["service"],
                internal_url=environment.external_url,
            )

        return await self._run_mutation(environment_id, operation, scale)

    async def delete_environment(self, environment_id: str) -> None:
        """
        Remove every cluster object of an environment and mark it TERMINATED.

        The user namespace is shared with the user's other environments and is kept.
        Deleting a TERMINATED environment is a no-op.
        """
        async def delete() -> None:
            environment = await self._load_environment(environment_id)
            if environment.status == EnvironmentStatus.TERMINATED.value:
                logger.info(f"[ENV] Environment {environment_id} already terminated")
                return

            names = self._resource_names(environment)
            await self.datastore.update_environment(environment_id, status=EnvironmentStatus.DELETING)

            if environment.kubernetes_namespace:
                cluster_client = await self._get_client(environment)
                namespace = names["namespace"]
                context = self._log_context(environment, namespace=namespace)

                results = await asyncio.gather(
                    self._delete_resource(
                        "Deployment", names["deployment"], context,
                        cluster_client.apps_v1.delete_namespaced_deployment,
                        name=names["deployment"], namespace=namespace,
                        propagation_policy="Background",
                    ),
                    self._delete_resource(
                        "Service", names["service"], context,
                        cluster_client.core_v1.delete_namespaced_service,
                        name=names["service"], namespace=namespace,
                    ),
                    self._delete_resource(
                        "PVC", names["pvc"], context,
                        cluster_client.core_v1.delete_namespaced_persistent_volume_claim,
                        name=names["pvc"], namespace=namespace,
                    ),
                    self._delete_resource(
                        "ConfigMap", names["configmap"], context,
                        cluster_client.core_v1.delete_namespaced_config_map,
                        name=names["configmap"], namespace=namespace,
                    ),
                    return_exceptions=True,
                )
                errors = [result for result in results if isinstance(result, Exception)]
                if errors:
                    raise errors[0]
            else:
                logger.info(f"[ENV] Environment {environment_id} was never provisioned, nothing to delete")

            await self.datastore.update_environment(environment_id, status=EnvironmentStatus.TERMINATED)
            logger.info(f"[ENV] Environment {environment_id} terminated")

        await self._run_mutation(environment_id, "delete", delete)

    # =========================================================================
    # INSPECTION
    # =========================================================================

    async def get_environment_info(self, environment_id: str) -> EnvironmentInfo:
        """
        Current status of an environment. Never raises.

        Any failure (datastore included) is logged in full and reported as
        ``EnvironmentInfo(status="ERROR", namespace="unknown")``.
        """
        try:
            environment = await self._load_environment(environment_id)
            names = self._resource_names(environment)

            info = EnvironmentInfo(
                status=environment.status,
                namespace=names["namespace"],
                deployment_name=environment.kubernetes_deployment_name,
                service_name=environment.kubernetes_service_name,
                internal_url=environment.external_url,
            )
            if not environment.kubernetes_namespace or environment.status == EnvironmentStatus.TERMINATED.value:
                return info

            cluster_client = await self._get_client(environment)
            pod = await self._find_pod(
                cluster_client, names, self._log_context(environment, namespace=names["namespace"])
            )
            if pod is None:
                return info

            phase = pod.status.phase if pod.status else None
            status = POD_PHASE_STATUS.get(phase)
            container_statuses = (pod.status.container_statuses if pod.status else None) or []
            return info.model_copy(update={
                "status": status.value if status else environment.status,
                "pod_name": pod.metadata.name,
                "ready": bool(container_statuses) and all(cs.ready for cs in container_statuses),
            })
        except Exception as e:
            details = serialize_error(e)
            logger.error(
                f"[ENV] Failed to get environment info for {environment_id}: "
                f"{details['name']}: {details['message']}\n{details['stack']}"
            )
            return EnvironmentInfo(status=EnvironmentStatus.ERROR.value, namespace="unknown")

    async def get_environment_logs(self, environment_id: str, lines: Optional[int] = None):
        """
        Tail the environment container log. Never raises.

        Returns:
            LogsAvailable or LogsUnavailable (with the reason)
        """
        tail_lines = lines or self.settings.k8s_log_tail_lines
        try:
            environment = await self._load_environment(environment_id)
            if not environment.kubernetes_namespace:
                return LogsUnavailable(reason="Environment has not been provisioned")

            names = self._resource_names(environment)
            context = self._log_context(environment, namespace=names["namespace"])
            cluster_client = await self._get_client(environment)
            pod = await self._find_pod(cluster_client, names, context)
            if pod is None:
                return LogsUnavailable(reason="No pod found for environment")

            content = await self._call(
                "Read pod logs",
                context,
                cluster_client.core_v1.read_namespaced_pod_log,
                name=pod.metadata.name,
                namespace=names["namespace"],
                container=self.settings.k8s_container_name,
                tail_lines=tail_lines,
            )
            return LogsAvailable(pod_name=pod.metadata.name, content=content or "")
        except Exception as e:
            details = serialize_error(e)
            logger.error(
                f"[ENV] Failed to get logs for environment {environment_id}: "
                f"{details['name']}: {details['message']}\n{details['stack']}"
            )
            return LogsUnavailable(reason=f"{details['name']}: {details['message']}")

    # =========================================================================
    # EXEC
    # =========================================================================

    async def execute_command(self, environment_id: str, command: str, timeout: Optional[int] = None):
        """
        Run a shell command in the environment container.

        The command runs once; only locating the pod is retried.

        Returns:
            CommandSucceeded (exit code 0) or CommandFailed (non-zero exit or timeout)

        Raises:
            EnvironmentNotFoundError, EnvironmentStateError (not RUNNING),
            DevPocketError for infrastructure failures
        """
        timeout = timeout or self.settings.k8s_exec_timeout_seconds

        try:
            environment = await self._load_environment(environment_id)
            if environment.status != EnvironmentStatus.RUNNING.value:
                raise EnvironmentStateError(
                    f"Environment {environment_id} must be RUNNING to execute commands "
                    f"(status: {environment.status})"
                )

            names = self._resource_names(environment)
            cluster_client = await self._get_client(environment)
            pod = await self._find_pod(
                cluster_client, names, self._log_context(environment, namespace=names["namespace"])
            )
            if pod is None:
                raise KubernetesError(f"No pod found for environment {environment_id}")

            logger.debug(f"[EXEC] Executing in pod {pod.metadata.name}: {command}")
            return await asyncio.to_thread(
                self._exec_in_pod, cluster_client, pod.metadata.name, names["namespace"], command, timeout
            )
        except _CALLER_ERRORS:
            raise
        except Exception as e:
            logger.error(f"[EXEC] Command failed in environment {environment_id}: {e}", exc_info=True)
            raise _wrap_error("Failed to execute command", e) from e

    def _exec_in_pod(
        self,
        cluster_client: ClusterClient,
        pod_name: str,
        namespace: str,
        command: str,
        timeout: int,
    ):
        """Blocking exec over a dedicated websocket client."""
        core_v1 = cluster_client.stream_core_v1()
        resp = None
        try:
            resp = stream(
                core_v1.connect_get_namespaced_pod_exec,
                pod_name,
                namespace,
                container=self.settings.k8s_container_name,
                command=["/bin/sh", "-c", command],
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
            resp.run_forever(timeout=timeout)

            timed_out = resp.is_open()
            stdout = resp.read_stdout(timeout=0) or ""
            stderr = resp.read_stderr(timeout=0) or ""

            if timed_out:
                logger.warning(f"[EXEC] Command timed out after {timeout}s in pod {pod_name}")
                return CommandFailed(
                    exit_code=None,
                    output=stdout,
                    error=stderr or f"Command timed out after {timeout}s",
                    timed_out=True,
                )

            try:
                exit_code = resp.returncode
            except (TypeError, KeyError, IndexError, ValueError):
                exit_code = None

            if exit_code == 0:
                return CommandSucceeded(output=stdout)
            return CommandFailed(exit_code=exit_code, output=stdout, error=stderr)
        finally:
            if resp is not None:
                resp.close()
            core_v1.api_client.close()
