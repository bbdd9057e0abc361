import time
from typing import Dict, List, Optional

import pytest

from log_watcher.controller.reconciler import Reconciler
from log_watcher.controller.scaling import ScalingWindow
from log_watcher.controller.state import WatcherState
from log_watcher.errors import ActionFailed, StatusWriteConflict
from log_watcher.models.events import Instance
from log_watcher.models.schemas import WatcherStatus, WatchResource
from log_watcher.notifiers.alert_notifier import AlertNotifier
from log_watcher.remediators.action_dispatcher import ActionDispatcher


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRuntime:
    """In-memory stand-in for KubernetesRuntime"""

    def __init__(self, pods: Optional[List[Instance]] = None, dry_run: bool = False):
        self.dry_run = dry_run
        self.pods = list(pods or [])
        self.logs: Dict[str, object] = {}
        self.slow: Dict[str, float] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.replicas: Dict[str, int] = {}
        self.list_error: Optional[Exception] = None

        self.fetched: List[str] = []
        self.deleted: List[str] = []
        self.annotated: List[tuple] = []
        self.jobs: List[Dict] = []
        self.rolled: List[tuple] = []
        self.scaled: List[tuple] = []
        self.deleted_resources: List[tuple] = []

    def _maybe_fail(self, method: str) -> None:
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    def list_instances(self, namespace, selector):
        if self.list_error is not None:
            raise self.list_error
        return [p for p in self.pods if p.namespace == namespace]

    def read_log(self, instance, tail_lines, timeout):
        self.fetched.append(instance.key)
        if instance.key in self.slow:
            time.sleep(self.slow[instance.key])
        entry = self.logs.get(instance.key, [])
        if isinstance(entry, Exception):
            raise entry
        return list(entry)[-tail_lines:]

    def delete_pod(self, instance, grace_period=30):
        self._maybe_fail("delete_pod")
        self.deleted.append(instance.key)

    def annotate_pod(self, instance, annotations):
        self._maybe_fail("annotate_pod")
        self.annotated.append((instance.key, dict(annotations)))

    def create_job(self, namespace, manifest):
        self._maybe_fail("create_job")
        self.jobs.append(manifest)
        return f"job-{len(self.jobs)}"

    def roll_deployment(self, namespace, name, max_unavailable=0, max_surge=0):
        self._maybe_fail("roll_deployment")
        self.rolled.append((namespace, name, max_unavailable, max_surge))

    def get_replicas(self, namespace, deployment):
        self._maybe_fail("get_replicas")
        if deployment not in self.replicas:
            raise ActionFailed("not found", retryable=False, status=404)
        return self.replicas[deployment]

    def scale_deployment(self, namespace, deployment, replicas):
        self._maybe_fail("scale_deployment")
        self.replicas[deployment] = replicas
        self.scaled.append((namespace, deployment, replicas))

    def delete_resource(self, namespace, kind, name):
        self._maybe_fail("delete_resource")
        self.deleted_resources.append((namespace, kind, name))
        return True


class FakeStore:
    """In-memory resource store with optimistic-concurrency status writes"""

    def __init__(self, max_write_attempts: int = 3):
        self.statuses: Dict[str, WatcherStatus] = {}
        self.max_write_attempts = max_write_attempts
        self.conflicts = 0
        self.writes = 0

    def status(self, key: str) -> WatcherStatus:
        return self.statuses.get(key, WatcherStatus())

    def update_status(self, namespace, name, mutate):
        key = f"{namespace}/{name}"
        for _ in range(self.max_write_attempts):
            updated = mutate(self.status(key))
            if self.conflicts > 0:
                self.conflicts -= 1
                continue
            self.statuses[key] = updated
            self.writes += 1
            return updated
        raise StatusWriteConflict(key, self.max_write_attempts)


def make_resource(
    pattern: str = "OOMKilled",
    actions: Optional[Dict] = None,
    name: str = "oom-watch",
    namespace: str = "default",
    generation: int = 1,
    uid: str = "uid-1",
    **spec_fields
) -> WatchResource:
    spec = {
        "podNamespace": "apps",
        "podLabelSelector": {"app": "api"},
        "matchPattern": pattern,
        "tailLines": 100,
        "actions": actions if actions is not None else {"restartPod": True},
    }
    spec.update(spec_fields)
    return WatchResource.model_validate({
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": uid,
            "generation": generation,
            "resourceVersion": "1",
        },
        "spec": spec,
    })


async def no_sleep(delay):
    no_sleep.delays.append(delay)


no_sleep.delays = []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pod_a():
    return Instance(namespace="apps", name="api-a", uid="a1", deployment="api")


@pytest.fixture
def pod_b():
    return Instance(namespace="apps", name="api-b", uid="b1", deployment="api")


@pytest.fixture
def runtime(pod_a, pod_b):
    return FakeRuntime(pods=[pod_a, pod_b])


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sleeps():
    no_sleep.delays = []
    return no_sleep.delays


@pytest.fixture
def dispatcher(runtime, clock, sleeps):
    return ActionDispatcher(
        runtime,
        default_cooldown=300,
        backoff_base=1.0,
        backoff_cap=30.0,
        action_timeout=5.0,
        clock=clock,
        sleep=no_sleep
    )


@pytest.fixture
def reconciler(runtime, store, dispatcher, clock):
    return Reconciler(
        runtime,
        store,
        dispatcher,
        AlertNotifier(timeout=1.0),
        fetch_timeout=0.5,
        call_timeout=5.0,
        clock=clock
    )


@pytest.fixture
def state_for():
    def build(resource: WatchResource) -> WatcherState:
        return WatcherState(version=resource.version, window=ScalingWindow(300.0))
    return build
