from datetime import datetime, timezone

import pytest

from log_watcher.controller.watch_store import parse_resource
from log_watcher.errors import WatchSpecUnavailable
from log_watcher.models.schemas import Condition, WatcherStatus

RAW = {
    "apiVersion": "monitoring.example.com/v1alpha1",
    "kind": "LogWatcher",
    "metadata": {"name": "oom-watch", "namespace": "default", "uid": "u1", "generation": 4},
    "spec": {
        "podNamespace": "apps",
        "podLabelSelector": {"app": "api"},
        "matchPattern": "OOMKilled",
        "actions": {
            "restartPod": True,
            "createJob": {"jobTemplate": "spec: {}", "timeout": 60, "retries": 2},
            "rollingUpdate": {"deploymentName": "api", "maxSurge": 1},
            "cleanup": {"timeout": 30, "resources": ["configmap/cache"]},
        },
        "alerting": {
            "slack": {"webhookURL": "https://hooks.slack.test/T1"},
            "email": {"smtpHost": "smtp.test", "smtpPort": 465, "from": "a@test", "to": "b@test"},
        },
        "scaling": {"minReplicas": 1, "maxReplicas": 3, "scaleUpThreshold": 5, "deploymentName": "api"},
        "metrics": {"enabled": True, "port": 9090},
        "reconcileInterval": 30,
    },
}


class TestParseResource:
    def test_camel_case_fields(self):
        resource = parse_resource(RAW)
        spec = resource.spec

        assert resource.key == "default/oom-watch"
        assert resource.version == ("u1", 4)
        assert spec.actions.restart_pod is True
        assert spec.actions.create_job.retries == 2
        assert spec.actions.rolling_update.max_surge == 1
        assert spec.actions.cleanup.resources == ["configmap/cache"]
        assert spec.alerting.slack.webhook_url == "https://hooks.slack.test/T1"
        assert spec.alerting.email.from_address == "a@test"
        assert spec.scaling.step == 1
        assert spec.interval_seconds(60) == 30
        assert spec.tail_line_count(100) == 100

    def test_missing_pattern_is_rejected(self):
        broken = {"metadata": RAW["metadata"], "spec": {"podNamespace": "apps"}}
        with pytest.raises(WatchSpecUnavailable):
            parse_resource(broken)

    def test_negative_timeout_is_rejected(self):
        spec = dict(RAW["spec"], actions={"createJob": {"jobTemplate": "x", "timeout": -1}})
        with pytest.raises(WatchSpecUnavailable):
            parse_resource({"metadata": RAW["metadata"], "spec": spec})


class TestWatcherStatus:
    def test_to_api_uses_cluster_names(self):
        status = WatcherStatus(
            conditions=[Condition(
                type="Ready",
                status="True",
                reason="Reconciled",
                last_transition_time=datetime(2026, 1, 1, tzinfo=timezone.utc)
            )],
            matches_count=3,
            observed_generation=4,
        )
        body = status.to_api()

        assert body["matchesCount"] == 3
        assert body["observedGeneration"] == 4
        assert body["conditions"][0]["lastTransitionTime"].startswith("2026-01-01T00:00:00")
        assert "lastReconcileTime" not in body

    def test_round_trip_from_cluster(self):
        status = WatcherStatus.model_validate({"podsRestarted": 2, "conditions": []})
        assert status.pods_restarted == 2
        assert status.condition("Ready") is None
