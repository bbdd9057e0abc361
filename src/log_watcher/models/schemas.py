"""
Pydantic schemas for the LogWatcher resource
Field aliases follow the camelCase names stored in the cluster
"""
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Dict, List, Optional
from datetime import datetime


class CamelModel(BaseModel):
    """Accepts both camelCase (cluster) and snake_case (Python) field names"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobConfig(CamelModel):
    """Job to submit when the pattern matches"""
    job_template: str
    timeout: int = Field(0, ge=0, description="Seconds; also the action cool-down")
    retries: int = Field(0, ge=0)


class RollingUpdateConfig(CamelModel):
    """Rolling update of the owning deployment"""
    deployment_name: str
    max_unavailable: int = Field(0, ge=0)
    max_surge: int = Field(0, ge=0)


class CleanupConfig(CamelModel):
    """Deferred removal of the pod and the listed resources"""
    timeout: int = Field(0, ge=0)
    resources: List[str] = Field(default_factory=list)


class ActionsConfig(CamelModel):
    """Remediation actions; every field is optional"""
    restart_pod: bool = False
    create_job: Optional[JobConfig] = None
    rolling_update: Optional[RollingUpdateConfig] = None
    cleanup: Optional[CleanupConfig] = None


class SlackConfig(CamelModel):
    webhook_url: str = Field(..., alias="webhookURL")
    channel: Optional[str] = None
    username: Optional[str] = None


class EmailConfig(CamelModel):
    smtp_host: str
    smtp_port: int = 25
    username: Optional[str] = None
    password: Optional[str] = None
    from_address: str = Field(..., alias="from")
    to: str
    subject: Optional[str] = None


class WebhookConfig(CamelModel):
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    method: str = "POST"


class AlertingConfig(CamelModel):
    """Alert channels; all configured channels are attempted"""
    slack: Optional[SlackConfig] = None
    email: Optional[EmailConfig] = None
    webhook: Optional[WebhookConfig] = None


class ScalingConfig(CamelModel):
    """Replica adjustment driven by match frequency"""
    min_replicas: int = Field(1, ge=0)
    max_replicas: int = Field(1, ge=0)
    scale_up_threshold: int = Field(0, ge=0)
    scale_down_threshold: int = Field(0, ge=0)
    deployment_name: str
    step: int = Field(1, gt=0)


class MetricsConfig(CamelModel):
    """Accepted for compatibility; the watcher exports no metrics"""
    enabled: bool = False
    port: Optional[int] = None
    path: Optional[str] = None


class WatchSpec(CamelModel):
    """Desired state of one LogWatcher"""
    pod_namespace: str
    pod_label_selector: Dict[str, str] = Field(default_factory=dict)
    match_pattern: str
    actions: ActionsConfig = Field(default_factory=ActionsConfig)
    alerting: Optional[AlertingConfig] = None
    scaling: Optional[ScalingConfig] = None
    annotations: Dict[str, str] = Field(default_factory=dict)
    metrics: Optional[MetricsConfig] = None
    reconcile_interval: int = Field(0, ge=0)
    tail_lines: int = Field(0, ge=0)

    def interval_seconds(self, default: int = 60) -> int:
        return self.reconcile_interval or default

    def tail_line_count(self, default: int = 100) -> int:
        return self.tail_lines or default


class Condition(CamelModel):
    """One health flag in the watcher status"""
    type: str
    status: str  # "True" / "False"
    reason: str
    message: str = ""
    last_transition_time: datetime


class WatcherStatus(CamelModel):
    """Observed state written back by the status aggregator"""
    conditions: List[Condition] = Field(default_factory=list)
    last_reconcile_time: Optional[datetime] = None
    observed_generation: Optional[int] = None
    matches_count: int = 0
    pods_restarted: int = 0
    alerts_sent: int = 0
    jobs_created: int = 0
    scaling_events: int = 0

    def condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def to_api(self) -> Dict:
        """Serialize with cluster field names"""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ResourceMeta(CamelModel):
    """The parts of object metadata the engine needs"""
    name: str
    namespace: str
    uid: str = ""
    generation: int = 0
    resource_version: Optional[str] = None


class WatchResource(CamelModel):
    """A LogWatcher as read from the resource store"""
    metadata: ResourceMeta
    spec: WatchSpec
    status: WatcherStatus = Field(default_factory=WatcherStatus)

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def version(self) -> tuple:
        """Changes whenever the spec identity or generation changes"""
        return (self.metadata.uid, self.metadata.generation)
