"""End-to-end reconcile cycles against the in-memory runtime and store"""

import asyncio
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from urllib3.exceptions import ReadTimeoutError

from conftest import make_resource, no_sleep
from log_watcher.controller.reconciler import LAST_MATCH_ANNOTATION, Reconciler
from log_watcher.errors import InstanceNotFound, StatusWriteConflict, Unreachable
from log_watcher.models.events import ActionKind, ActionResult, SkipReason
from log_watcher.notifiers.alert_notifier import AlertNotifier
from log_watcher.remediators.action_dispatcher import ActionDispatcher
from log_watcher.remediators.k8s_runtime import KubernetesRuntime

KEY = "default/oom-watch"


def run(reconciler, resource, state):
    return asyncio.run(reconciler.run_cycle(resource, state))


def condition(store, condition_type):
    return store.status(KEY).condition(condition_type)


class TestMatchAndRestart:
    def test_matched_pod_is_restarted(self, reconciler, runtime, store, state_for, pod_a):
        runtime.logs[pod_a.key] = ["starting", "container api OOMKilled"]
        resource = make_resource()
        cycle = run(reconciler, resource, state_for(resource))

        assert runtime.deleted == ["apps/api-a"]
        [matched] = [r for r in cycle.reports if r.matched]
        assert matched.event.excerpt == "OOMKilled"

        status = store.status(KEY)
        assert status.matches_count == 1
        assert status.pods_restarted == 1
        assert status.observed_generation == 1
        assert condition(store, "Ready").status == "True"
        assert condition(store, "Degraded").status == "False"

    def test_second_cycle_is_debounced(self, reconciler, runtime, store, state_for, pod_a, clock):
        runtime.logs[pod_a.key] = ["OOMKilled"]
        resource = make_resource()
        state = state_for(resource)
        run(reconciler, resource, state)
        clock.advance(60)
        cycle = run(reconciler, resource, state)

        [outcome] = cycle.outcomes()
        assert outcome.reason == SkipReason.DEBOUNCED
        assert runtime.deleted == ["apps/api-a"]
        assert store.status(KEY).matches_count == 2
        assert store.status(KEY).pods_restarted == 1

    def test_matched_pod_is_annotated(self, reconciler, runtime, state_for, pod_a):
        runtime.logs[pod_a.key] = ["OOMKilled"]
        resource = make_resource(annotations={"team": "core"})
        run(reconciler, resource, state_for(resource))

        [(pod, annotations)] = runtime.annotated
        assert pod == "apps/api-a"
        assert annotations["team"] == "core"
        assert LAST_MATCH_ANNOTATION in annotations


class TestPatternInvalid:
    def test_no_fetch_and_condition_set(self, reconciler, runtime, store, state_for):
        resource = make_resource(pattern="(")
        cycle = run(reconciler, resource, state_for(resource))

        assert cycle.pattern_error
        assert runtime.fetched == []
        assert condition(store, "PatternInvalid").status == "True"
        assert condition(store, "Ready").status == "False"
        assert store.status(KEY).matches_count == 0

    def test_fixed_pattern_recovers(self, reconciler, runtime, store, state_for, pod_a):
        runtime.logs[pod_a.key] = ["OOMKilled"]
        broken = make_resource(pattern="(")
        run(reconciler, broken, state_for(broken))

        fixed = make_resource(pattern="OOM(Killed)", generation=2)
        run(reconciler, fixed, state_for(fixed))
        assert condition(store, "PatternInvalid").status == "False"
        assert store.status(KEY).observed_generation == 2


class TestPartialFailure:
    def test_slow_pod_times_out_without_blocking_others(self, reconciler, runtime, store, state_for, pod_a, pod_b):
        runtime.slow[pod_a.key] = 1.0
        runtime.logs[pod_b.key] = ["OOMKilled"]
        resource = make_resource()
        cycle = run(reconciler, resource, state_for(resource))

        assert runtime.deleted == ["apps/api-b"]
        errors = {r.instance.key: r.error for r in cycle.reports}
        assert errors["apps/api-a"].startswith("Timeout")
        degraded = condition(store, "Degraded")
        assert degraded.status == "True"
        assert degraded.reason == "InstanceUnobserved"
        assert condition(store, "Ready").status == "True"

    def test_vanished_pod_is_skipped_silently(self, reconciler, runtime, store, state_for, pod_a, pod_b):
        runtime.logs[pod_a.key] = InstanceNotFound("gone")
        runtime.logs[pod_b.key] = ["all good"]
        resource = make_resource()
        cycle = run(reconciler, resource, state_for(resource))

        assert [r.instance.key for r in cycle.reports] == ["apps/api-b"]
        assert condition(store, "Degraded").status == "False"

    def test_unreachable_pod_degrades(self, reconciler, runtime, store, state_for, pod_a):
        runtime.logs[pod_a.key] = Unreachable("connection refused")
        resource = make_resource()
        run(reconciler, resource, state_for(resource))
        assert condition(store, "Degraded").reason == "InstanceUnobserved"

    def test_list_failure_marks_reconcile_failed(self, reconciler, runtime, store, state_for):
        runtime.list_error = Unreachable("apiserver 503")
        resource = make_resource()
        cycle = run(reconciler, resource, state_for(resource))

        assert cycle.reports == []
        failed = condition(store, "ReconcileFailed")
        assert failed.status == "True"
        assert failed.reason == "InstanceListFailed"


class TestScaling:
    def test_scales_up_when_window_reaches_threshold(self, reconciler, runtime, store, state_for, pod_a, pod_b):
        runtime.logs[pod_a.key] = ["OOMKilled"]
        runtime.logs[pod_b.key] = ["OOMKilled"]
        runtime.replicas["api"] = 2
        resource = make_resource(
            actions={},
            scaling={"minReplicas": 1, "maxReplicas": 4, "scaleUpThreshold": 2, "deploymentName": "api"}
        )
        cycle = run(reconciler, resource, state_for(resource))

        assert cycle.scaling.desired_replicas == 3
        assert runtime.scaled == [("apps", "api", 3)]
        assert store.status(KEY).scaling_events == 1

    def test_missing_deployment_degrades(self, reconciler, runtime, store, state_for):
        resource = make_resource(
            actions={},
            scaling={"minReplicas": 1, "maxReplicas": 4, "scaleUpThreshold": 2, "deploymentName": "ghost"}
        )
        cycle = run(reconciler, resource, state_for(resource))

        assert cycle.scaling_error
        assert runtime.scaled == []
        assert condition(store, "Degraded").reason == "ScalingFailed"


class TestStatusCommit:
    def test_lost_write_is_carried_into_next_commit(self, reconciler, runtime, store, state_for, pod_a, clock):
        runtime.logs[pod_a.key] = ["OOMKilled"]
        resource = make_resource()
        state = state_for(resource)

        store.conflicts = 3
        with pytest.raises(StatusWriteConflict):
            run(reconciler, resource, state)
        assert store.writes == 0
        assert state.uncommitted.restarts == 1

        clock.advance(10)
        run(reconciler, resource, state)
        status = store.status(KEY)
        assert status.matches_count == 2
        assert status.pods_restarted == 1
        failed = condition(store, "ReconcileFailed")
        assert failed.status == "True"
        assert failed.reason == "StatusWriteConflict"
        assert state.uncommitted.is_empty()

    def test_conflict_within_retry_budget_is_invisible(self, reconciler, runtime, store, state_for, pod_a):
        runtime.logs[pod_a.key] = ["OOMKilled"]
        resource = make_resource()
        store.conflicts = 2
        run(reconciler, resource, state_for(resource))

        assert store.status(KEY).matches_count == 1
        assert condition(store, "ReconcileFailed").status == "False"


class TestCleanup:
    def test_cleanup_runs_on_follow_up_cycle(self, reconciler, runtime, store, state_for, pod_a, clock):
        runtime.logs[pod_a.key] = ["OOMKilled"]
        resource = make_resource(actions={
            "restartPod": True,
            "cleanup": {"timeout": 120, "resources": ["configmap/api-cache"]},
        })
        state = state_for(resource)

        first = run(reconciler, resource, state)
        kinds = {o.kind: o for o in first.outcomes()}
        assert kinds[ActionKind.RESTART].reason == SkipReason.SUPERSEDED
        assert state.next_cleanup_due() == clock.now + 120
        assert runtime.deleted_resources == []

        runtime.logs[pod_a.key] = ["recovered"]
        clock.advance(121)
        second = run(reconciler, resource, state)

        [cleanup] = second.cleanup_outcomes
        assert cleanup.result == ActionResult.SUCCEEDED
        assert runtime.deleted_resources == [("apps", "pod", "api-a"), ("apps", "configmap", "api-cache")]
        assert state.cleanups == []
        assert state.next_cleanup_due() is None


class TestTransportFailure:
    def test_connection_drop_during_restart_stays_with_its_pod(self, store, state_for, clock, sleeps):
        runtime = KubernetesRuntime(request_timeout=1.0)
        runtime.core_v1 = MagicMock()
        runtime.core_v1.list_namespaced_pod.return_value = client.V1PodList(items=[
            client.V1Pod(metadata=client.V1ObjectMeta(name=name, namespace="apps", uid=name))
            for name in ("api-a", "api-b")
        ])
        runtime.core_v1.read_namespaced_pod_log.return_value = "OOMKilled\n"

        def delete(name, namespace, **kwargs):
            if name == "api-a":
                raise ReadTimeoutError(None, "/api/v1/pods", "read timed out")

        runtime.core_v1.delete_namespaced_pod.side_effect = delete
        dispatcher = ActionDispatcher(runtime, clock=clock, sleep=no_sleep)
        reconciler = Reconciler(runtime, store, dispatcher, AlertNotifier(), fetch_timeout=1.0, clock=clock)
        resource = make_resource()

        cycle = run(reconciler, resource, state_for(resource))

        results = {o.instance.name: o.result for o in cycle.outcomes()}
        assert results == {"api-a": ActionResult.FAILED, "api-b": ActionResult.SUCCEEDED}
        status = store.status(KEY)
        assert status.matches_count == 2
        assert status.pods_restarted == 1
        degraded = condition(store, "Degraded")
        assert degraded.status == "True"
        assert degraded.reason == "ActionFailed"
