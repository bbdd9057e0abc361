"""
Watch Store - LogWatcher custom resources in the cluster
Reads specs, streams change events and writes status with conflict detection
"""
import threading
from typing import Callable, Dict, List, Optional

import structlog
from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from pydantic import ValidationError
from urllib3.exceptions import HTTPError

from log_watcher.errors import StatusWriteConflict, WatchSpecUnavailable
from log_watcher.models.schemas import WatcherStatus, WatchResource
from log_watcher.utils.retry import backoff_delay

logger = structlog.get_logger()

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


def parse_resource(obj: Dict) -> WatchResource:
    """
    Build a WatchResource from a raw custom object

    Raises:
        WatchSpecUnavailable: the object does not carry a valid spec
    """
    try:
        return WatchResource.model_validate({
            "metadata": obj.get("metadata") or {},
            "spec": obj.get("spec") or {},
            "status": obj.get("status") or {},
        })
    except ValidationError as e:
        metadata = obj.get("metadata") or {}
        key = f"{metadata.get('namespace')}/{metadata.get('name')}"
        raise WatchSpecUnavailable(f"{key}: invalid spec: {e.error_count()} error(s)") from e


class KubernetesWatchStore:
    """
    LogWatcher resources through the CustomObjects API

    Status writes are read-modify-write against the latest resourceVersion;
    a 409 rereads and reapplies the change, up to ``max_write_attempts``.
    """

    def __init__(
        self,
        group: str = "monitoring.example.com",
        version: str = "v1alpha1",
        plural: str = "logwatchers",
        namespace: Optional[str] = None,
        max_write_attempts: int = 3,
        request_timeout: float = 30.0,
        relist_backoff: float = 5.0,
        api_client: Optional[client.ApiClient] = None
    ):
        self.group = group
        self.version = version
        self.plural = plural
        self.namespace = namespace
        self.max_write_attempts = max_write_attempts
        self.request_timeout = request_timeout
        self.relist_backoff = relist_backoff
        self.api = client.CustomObjectsApi(api_client)

        logger.info("KubernetesWatchStore initialized", group=group, plural=plural, namespace=namespace or "*")

    def _list_call(self) -> Callable:
        if self.namespace:
            def list_namespaced(**kwargs):
                return self.api.list_namespaced_custom_object(
                    self.group, self.version, self.namespace, self.plural, **kwargs
                )
            return list_namespaced

        def list_cluster(**kwargs):
            return self.api.list_cluster_custom_object(self.group, self.version, self.plural, **kwargs)
        return list_cluster

    def list(self) -> List[WatchResource]:
        response = self._list_call()(_request_timeout=self.request_timeout)
        resources = []
        for obj in response.get("items", []):
            try:
                resources.append(parse_resource(obj))
            except WatchSpecUnavailable as e:
                logger.error("Skipping LogWatcher", error=str(e))
        return resources

    def get(self, namespace: str, name: str) -> WatchResource:
        try:
            obj = self.api.get_namespaced_custom_object(
                self.group, self.version, namespace, self.plural, name,
                _request_timeout=self.request_timeout
            )
        except ApiException as e:
            raise WatchSpecUnavailable(f"{namespace}/{name}: {e.status} {e.reason}") from e
        return parse_resource(obj)

    def update_status(
        self,
        namespace: str,
        name: str,
        mutate: Callable[[WatcherStatus], WatcherStatus]
    ) -> WatcherStatus:
        """
        Apply ``mutate`` to the latest stored status and write it back

        Raises:
            StatusWriteConflict: every attempt lost the resourceVersion race
            WatchSpecUnavailable: the resource could not be read or written
        """
        key = f"{namespace}/{name}"
        for attempt in range(1, self.max_write_attempts + 1):
            try:
                obj = self.api.get_namespaced_custom_object(
                    self.group, self.version, namespace, self.plural, name,
                    _request_timeout=self.request_timeout
                )
            except ApiException as e:
                raise WatchSpecUnavailable(f"{key}: {e.status} {e.reason}") from e

            current = WatcherStatus.model_validate(obj.get("status") or {})
            updated = mutate(current)
            obj["status"] = updated.to_api()

            try:
                self.api.replace_namespaced_custom_object_status(
                    self.group, self.version, namespace, self.plural, name, obj,
                    _request_timeout=self.request_timeout
                )
                return updated
            except ApiException as e:
                if e.status != 409:
                    raise WatchSpecUnavailable(f"{key}: status write {e.status} {e.reason}") from e
                logger.warning("Status write conflict", watcher=key, attempt=attempt)

        raise StatusWriteConflict(key, self.max_write_attempts)

    def watch(self, on_event: Callable[[str, Dict], None], stop: threading.Event) -> None:
        """
        Stream ADDED/MODIFIED/DELETED events into ``on_event`` until ``stop`` is set

        Blocking; run it in its own thread. The raw object is passed on so a
        DELETED event can be handled even when its spec no longer validates.
        API and transport failures back off and relist; a relist reports
        every watcher that vanished in the meantime as DELETED.
        """
        list_call = self._list_call()
        resource_version = None
        known: Dict[str, Dict] = {}
        failures = 0

        while not stop.is_set():
            watcher = watch.Watch()
            try:
                if resource_version is None:
                    response = list_call(_request_timeout=self.request_timeout)
                    listed = {_key(obj): obj for obj in response.get("items", [])}
                    for key in sorted(set(known) - set(listed)):
                        logger.info("LogWatcher gone during relist", watcher=key)
                        on_event(DELETED, {"metadata": known[key]})
                    for obj in listed.values():
                        on_event(ADDED, obj)
                    known = {key: _identity(obj) for key, obj in listed.items()}
                    resource_version = response.get("metadata", {}).get("resourceVersion")
                    failures = 0

                for event in watcher.stream(list_call, resource_version=resource_version, timeout_seconds=60):
                    if stop.is_set():
                        break
                    obj = event["object"]
                    if event["type"] == "ERROR":
                        # 410 Gone: our resourceVersion expired, relist
                        logger.warning("Watch expired, relisting", code=obj.get("code"))
                        resource_version = None
                        break
                    resource_version = obj.get("metadata", {}).get("resourceVersion", resource_version)
                    if event["type"] == DELETED:
                        known.pop(_key(obj), None)
                    else:
                        known[_key(obj)] = _identity(obj)
                    on_event(event["type"], obj)
            except ApiException as e:
                logger.error("Watch failed, relisting", status=e.status, error=e.reason)
                resource_version = None
                failures += 1
                stop.wait(backoff_delay(failures - 1, self.relist_backoff, 60))
            except HTTPError as e:
                logger.error("Watch connection lost, relisting", error=str(e))
                resource_version = None
                failures += 1
                stop.wait(backoff_delay(failures - 1, self.relist_backoff, 60))
            finally:
                watcher.stop()


def _key(obj: Dict) -> str:
    metadata = obj.get("metadata") or {}
    return f"{metadata.get('namespace')}/{metadata.get('name')}"


def _identity(obj: Dict) -> Dict:
    metadata = obj.get("metadata") or {}
    return {"namespace": metadata.get("namespace"), "name": metadata.get("name"), "uid": metadata.get("uid")}
