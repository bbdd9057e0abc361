"""
Kubernetes Runtime - the workload side of the watcher
Lists pods, reads their logs and executes remediation calls
"""
import time
from typing import Dict, List, Optional

import structlog
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError, ReadTimeoutError

from log_watcher.errors import ActionFailed, FetchTimeout, InstanceNotFound, Unreachable
from log_watcher.models.events import Instance

logger = structlog.get_logger()

RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"


def load_cluster_config() -> None:
    """Load kubeconfig (auto-detects in-cluster vs local)"""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")


def _action_error(verb: str, e: Exception) -> ActionFailed:
    if not isinstance(e, ApiException):
        # Connection resets and read timeouts from urllib3
        return ActionFailed(f"{verb} failed: {e}", retryable=True)
    # 4xx other than conflict/throttling will not succeed on retry
    retryable = e.status is None or e.status >= 500 or e.status in (409, 429)
    return ActionFailed(f"{verb} failed: {e.reason}", retryable=retryable, status=e.status)


class KubernetesRuntime:
    """
    Pod, Job and Deployment operations used by the engine

    Every call is blocking; the engine runs them in worker threads under
    its own deadlines.

    Safety features:
    - Dry-run mode (reads allowed, mutations skipped by the dispatcher)
    - Request timeouts on every call
    """

    def __init__(
        self,
        dry_run: bool = False,
        request_timeout: float = 30.0,
        api_client: Optional[client.ApiClient] = None
    ):
        self.dry_run = dry_run
        self.request_timeout = request_timeout

        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.batch_v1 = client.BatchV1Api(api_client)

        logger.info("KubernetesRuntime initialized", dry_run=dry_run)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def list_instances(self, namespace: str, selector: Dict[str, str]) -> List[Instance]:
        """Pods in a namespace matching every label in the selector"""
        label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
        try:
            pods = self.core_v1.list_namespaced_pod(
                namespace=namespace,
                label_selector=label_selector or None,
                _request_timeout=self.request_timeout
            )
        except ApiException as e:
            raise Unreachable(f"pod list in {namespace}: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise Unreachable(f"pod list in {namespace}: {e}") from e

        instances = []
        for pod in pods.items:
            if pod.metadata.deletion_timestamp is not None:
                continue
            instances.append(Instance(
                namespace=pod.metadata.namespace,
                name=pod.metadata.name,
                uid=pod.metadata.uid or "",
                deployment=self._owning_deployment(pod)
            ))
        return instances

    @staticmethod
    def _owning_deployment(pod) -> Optional[str]:
        """Deployment name derived from the ReplicaSet owner and pod-template-hash"""
        labels = pod.metadata.labels or {}
        template_hash = labels.get("pod-template-hash")
        for owner in pod.metadata.owner_references or []:
            if owner.kind != "ReplicaSet":
                continue
            suffix = f"-{template_hash}" if template_hash else None
            if suffix and owner.name.endswith(suffix):
                return owner.name[:-len(suffix)]
            return owner.name.rsplit("-", 1)[0]
        return None

    def read_log(self, instance: Instance, tail_lines: int, timeout: float) -> List[str]:
        """
        Read the last lines of a pod's log

        Raises:
            InstanceNotFound: the pod no longer exists
            FetchTimeout: the API server did not answer in time
            Unreachable: any other API or transport failure
        """
        try:
            text = self.core_v1.read_namespaced_pod_log(
                name=instance.name,
                namespace=instance.namespace,
                tail_lines=tail_lines,
                _request_timeout=timeout
            )
        except ApiException as e:
            if e.status == 404:
                raise InstanceNotFound(instance.key) from e
            raise Unreachable(f"{instance.key}: {e.status} {e.reason}") from e
        except ReadTimeoutError as e:
            raise FetchTimeout(f"{instance.key}: {e}") from e
        except HTTPError as e:
            raise Unreachable(f"{instance.key}: {e}") from e

        return text.splitlines() if text else []

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    def delete_pod(self, instance: Instance, grace_period: int = 30) -> None:
        """Delete a pod and let its controller recreate it"""
        try:
            self.core_v1.delete_namespaced_pod(
                name=instance.name,
                namespace=instance.namespace,
                grace_period_seconds=grace_period,
                _request_timeout=self.request_timeout
            )
        except (ApiException, HTTPError) as e:
            raise _action_error("pod delete", e) from e
        logger.info("Pod deleted", pod=instance.key)

    def annotate_pod(self, instance: Instance, annotations: Dict[str, str]) -> None:
        body = {"metadata": {"annotations": annotations}}
        try:
            self.core_v1.patch_namespaced_pod(
                name=instance.name,
                namespace=instance.namespace,
                body=body,
                _request_timeout=self.request_timeout
            )
        except (ApiException, HTTPError) as e:
            raise _action_error("pod annotate", e) from e

    def create_job(self, namespace: str, manifest: Dict) -> str:
        """Submit a Job manifest and return the created name"""
        try:
            job = self.batch_v1.create_namespaced_job(
                namespace=namespace,
                body=manifest,
                _request_timeout=self.request_timeout
            )
        except (ApiException, HTTPError) as e:
            raise _action_error("job create", e) from e
        logger.info("Job created", namespace=namespace, job=job.metadata.name)
        return job.metadata.name

    def roll_deployment(
        self,
        namespace: str,
        name: str,
        max_unavailable: int = 0,
        max_surge: int = 0
    ) -> None:
        """Trigger a rolling restart bounded by maxUnavailable/maxSurge"""
        rolling = {}
        if max_unavailable:
            rolling["maxUnavailable"] = max_unavailable
        if max_surge:
            rolling["maxSurge"] = max_surge

        body = {
            "spec": {
                "template": {
                    "metadata": {
                        "annotations": {
                            RESTARTED_AT_ANNOTATION: time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
                        }
                    }
                }
            }
        }
        if rolling:
            body["spec"]["strategy"] = {"type": "RollingUpdate", "rollingUpdate": rolling}

        try:
            self.apps_v1.patch_namespaced_deployment(
                name=name,
                namespace=namespace,
                body=body,
                _request_timeout=self.request_timeout
            )
        except (ApiException, HTTPError) as e:
            raise _action_error("rolling update", e) from e
        logger.info("Rolling update triggered", namespace=namespace, deployment=name, **rolling)

    def get_replicas(self, namespace: str, deployment: str) -> int:
        try:
            scale = self.apps_v1.read_namespaced_deployment_scale(
                name=deployment,
                namespace=namespace,
                _request_timeout=self.request_timeout
            )
        except (ApiException, HTTPError) as e:
            raise _action_error("scale read", e) from e
        return scale.spec.replicas or 0

    def scale_deployment(self, namespace: str, deployment: str, replicas: int) -> None:
        try:
            self.apps_v1.patch_namespaced_deployment_scale(
                name=deployment,
                namespace=namespace,
                body={"spec": {"replicas": replicas}},
                _request_timeout=self.request_timeout
            )
        except (ApiException, HTTPError) as e:
            raise _action_error("scale", e) from e
        logger.info("Deployment scaled", namespace=namespace, deployment=deployment, replicas=replicas)

    def delete_resource(self, namespace: str, kind: str, name: str) -> bool:
        """
        Delete a namespaced resource by kind

        Returns:
            False when the resource was already gone
        """
        deleters = {
            "pod": self.core_v1.delete_namespaced_pod,
            "configmap": self.core_v1.delete_namespaced_config_map,
            "secret": self.core_v1.delete_namespaced_secret,
            "service": self.core_v1.delete_namespaced_service,
            "pvc": self.core_v1.delete_namespaced_persistent_volume_claim,
            "job": self.batch_v1.delete_namespaced_job,
            "deployment": self.apps_v1.delete_namespaced_deployment,
        }
        deleter = deleters.get(kind.lower())
        if deleter is None:
            raise ActionFailed(f"unsupported cleanup kind: {kind}", retryable=False)

        try:
            deleter(
                name=name,
                namespace=namespace,
                propagation_policy="Background",
                _request_timeout=self.request_timeout
            )
        except (ApiException, HTTPError) as e:
            if isinstance(e, ApiException) and e.status == 404:
                return False
            raise _action_error(f"{kind} delete", e) from e
        logger.info("Resource deleted", namespace=namespace, kind=kind, name=name)
        return True
