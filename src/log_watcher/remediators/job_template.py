"""
Job template rendering for the createJob action
"""
from string import Template
from typing import Any, Dict

import yaml

from log_watcher.errors import ActionFailed
from log_watcher.models.events import Instance, MatchEvent

WATCHER_LABEL = "log-watcher.io/watcher"


def template_parameters(watcher: str, instance: Instance, event: MatchEvent) -> Dict[str, str]:
    return {
        "POD_NAME": instance.name,
        "POD_NAMESPACE": instance.namespace,
        "POD_UID": instance.uid,
        "MATCH_EXCERPT": event.excerpt,
        "WATCHER_NAME": watcher,
    }


def _substitute(value: Any, params: Dict[str, str]) -> Any:
    if isinstance(value, str):
        return Template(value).safe_substitute(params)
    if isinstance(value, list):
        return [_substitute(item, params) for item in value]
    if isinstance(value, dict):
        return {key: _substitute(item, params) for key, item in value.items()}
    return value


def render_job(
    template: str,
    watcher: str,
    instance: Instance,
    event: MatchEvent,
    timeout: int = 0
) -> Dict:
    """
    Build a Job manifest from a YAML template

    ${POD_NAME}, ${POD_NAMESPACE}, ${POD_UID}, ${MATCH_EXCERPT} and
    ${WATCHER_NAME} are substituted in every string value after parsing, so
    log text never reaches the YAML parser. The same values are exported as
    environment variables to every container.

    Raises:
        ActionFailed: the template is not a Job manifest (never retried)
    """
    try:
        manifest = yaml.safe_load(template)
    except yaml.YAMLError as e:
        raise ActionFailed(f"job template is not valid YAML: {e}", retryable=False) from e

    if not isinstance(manifest, dict) or not isinstance(manifest.get("spec"), dict):
        raise ActionFailed("job template must be a Job manifest with a spec", retryable=False)

    params = template_parameters(watcher, instance, event)
    manifest = _substitute(manifest, params)
    short_name = watcher.rsplit("/", 1)[-1]

    manifest.setdefault("apiVersion", "batch/v1")
    manifest.setdefault("kind", "Job")

    metadata = manifest.setdefault("metadata", {})
    metadata["namespace"] = instance.namespace
    if not metadata.get("name"):
        metadata.setdefault("generateName", f"{short_name}-remediation-")
    metadata.setdefault("labels", {})[WATCHER_LABEL] = short_name

    spec = manifest["spec"]
    if timeout and "activeDeadlineSeconds" not in spec:
        spec["activeDeadlineSeconds"] = timeout

    pod_spec = spec.get("template", {}).get("spec", {})
    containers = pod_spec.get("containers") or []
    if not containers:
        raise ActionFailed("job template has no containers", retryable=False)

    injected = [{"name": name, "value": value} for name, value in params.items()]
    for container in containers:
        env = container.setdefault("env", [])
        present = {item.get("name") for item in env}
        env.extend(item for item in injected if item["name"] not in present)

    return manifest
