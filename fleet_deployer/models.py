import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional


class DeploymentMode(str, Enum):
    BLUE_GREEN = "BlueGreen"
    CANARY = "Canary"
    ROLLING_UPDATE = "RollingUpdate"
    DEPLOY_ONLY = "DeployOnly"


class Step(IntEnum):
    """Pipeline phases in execution order"""
    CHECK_PREVIOUS = 1
    DEPLOY = 2
    HEALTH_CHECK = 3
    ADDITIONAL_WORK = 4
    TRIGGER_LIFECYCLE_CALLBACK = 5
    CLEAN_PREVIOUS_VERSION = 6
    CLEAN_CHECKING = 7
    GATHER_METRICS = 8
    RUN_API_TEST = 9


@dataclass(frozen=True)
class Capacity:
    min: int = 0
    max: int = 0
    desired: int = 0

    def __str__(self):
        return f"min={self.min}, desired={self.desired}, max={self.max}"


@dataclass
class ScalingPolicy:
    name: str
    adjustment_type: str = "ChangeInCapacity"
    scaling_adjustment: int = 1
    cooldown: int = 300


@dataclass
class Alarm:
    name: str
    metric: str
    threshold: float
    comparison: str = "GreaterThanOrEqualToThreshold"
    namespace: str = "AWS/EC2"
    statistic: str = "Average"
    period: int = 300
    evaluation_periods: int = 1
    alarm_actions: list = field(default_factory=list)  # scaling policy names


@dataclass
class ScheduledAction:
    name: str
    recurrence: str
    capacity: Optional[Capacity] = None


@dataclass
class ApiSpec:
    method: str
    url: str
    body: dict = field(default_factory=dict)
    header: dict = field(default_factory=dict)


@dataclass
class ApiTestTemplate:
    name: str
    duration_s: float = 10.0
    request_per_second: int = 5
    apis: list = field(default_factory=list)  # ApiSpec


@dataclass(frozen=True)
class RegionConfig:
    """Per-region manifest data, read-only for the deployer"""
    region: str
    instance_type: str = ""
    ami_id: str = ""
    ssh_key: str = ""
    vpc: str = ""
    healthcheck_target_group: str = ""
    healthcheck_load_balancer: str = ""
    security_groups: tuple = ()
    target_groups: tuple = ()
    load_balancers: tuple = ()
    availability_zones: tuple = ()
    scheduled_actions: tuple = ()
    termination_policies: tuple = ()
    use_public_subnets: bool = False
    detailed_monitoring_enabled: bool = False


@dataclass
class Stack:
    stack: str
    env: str
    replacement_type: DeploymentMode = DeploymentMode.BLUE_GREEN
    capacity: Capacity = field(default_factory=lambda: Capacity(1, 1, 1))
    regions: list = field(default_factory=list)  # RegionConfig
    iam_instance_profile: str = ""
    ebs_optimized: bool = False
    tags: list = field(default_factory=list)  # "key=value"
    autoscaling: list = field(default_factory=list)  # ScalingPolicy
    alarms: list = field(default_factory=list)  # Alarm
    pre_terminate_commands: list = field(default_factory=list)
    rolling_update_instance_count: int = 1
    termination_delay_rate: int = 0  # percent of instances removed per step
    api_test_enabled: bool = False
    api_test_template: str = ""

    def region_names(self):
        return [r.region for r in self.regions]


@dataclass
class AppConfig:
    """Application-wide manifest data shared by all stacks"""
    name: str
    tags: list = field(default_factory=list)
    scheduled_actions: list = field(default_factory=list)  # ScheduledAction
    api_test_templates: list = field(default_factory=list)  # ApiTestTemplate
    stacks: list = field(default_factory=list)  # Stack

    def api_test_template(self, name):
        for template in self.api_test_templates:
            if template.name == name:
                return template
        return None


@dataclass
class RunConfig:
    """Options for one pipeline run"""
    region: str = ""  # restrict execution to this region
    stack: str = ""  # restrict execution to this stack
    timeout_s: float = 3600.0
    polling_interval_s: float = 60.0
    force_manifest_capacity: bool = False
    complete_canary: bool = False
    disable_metrics: bool = False
    slack_off: bool = False
    ami: str = ""  # overrides region ami_id
    override_instance_type: str = ""
    extra_tags: str = ""  # "k1=v1,k2=v2"
    release_notes: str = ""
    start_timestamp: float = field(default_factory=time.time)
    retry_base_delay_s: float = 1.0
    retry_step_delay_s: float = 2.0
    settle_delay_s: float = 30.0  # fixed wait for provider-side state to settle

    def region_selected(self, region):
        return not self.region or self.region == region


@dataclass
class StepStatus:
    """Completion flags for each pipeline phase of one deployer"""
    completed: dict = field(default_factory=lambda: {step: False for step in Step})

    def is_done(self, step):
        return self.completed[step]

    def can_run(self, step):
        if step == Step.CHECK_PREVIOUS:
            return True
        return self.completed[Step(step - 1)]

    def mark(self, step):
        self.completed[step] = True


@dataclass
class RegionState:
    """Mutable per-region deployment record, owned by one deployer"""
    region: str
    asg_name: str = ""
    prev_asgs: list = field(default_factory=list)
    prev_instances: list = field(default_factory=list)
    prev_versions: list = field(default_factory=list)
    prev_capacity: Optional[Capacity] = None
    latest_asg: str = ""
    canary_flag: bool = False
    security_group: str = ""  # extra group attached to new instances (canary)
    applied_capacity: Optional[Capacity] = None
    healthy: bool = False
    drained: set = field(default_factory=set)
    prev_target_group_arns: dict = field(default_factory=dict)  # previous group -> target group arns


# Records returned by the cloud provider contract

@dataclass
class Instance:
    instance_id: str
    lifecycle_state: str = "InService"
    health_status: str = "Healthy"
    network_interfaces: list = field(default_factory=list)  # NetworkInterface


@dataclass
class NetworkInterface:
    interface_id: str
    security_groups: list = field(default_factory=list)


@dataclass
class LaunchTemplate:
    template_id: str
    name: str
    version: int = 1
    image_id: str = ""
    instance_type: str = ""
    security_groups: list = field(default_factory=list)


@dataclass
class AutoscalingGroup:
    name: str
    capacity: Capacity
    launch_template: Optional[LaunchTemplate] = None
    instances: list = field(default_factory=list)  # Instance
    target_group_arns: list = field(default_factory=list)
    load_balancers: list = field(default_factory=list)
    tags: dict = field(default_factory=dict)
    created_time: float = 0.0


@dataclass
class TargetGroup:
    name: str
    arn: str
    port: int = 80
    protocol: str = "HTTP"
    vpc_id: str = ""
    health_check_path: str = "/"


@dataclass
class LoadBalancer:
    name: str
    arn: str
    security_groups: list = field(default_factory=list)
    listener_target_group: str = ""


@dataclass
class IngressRule:
    protocol: str
    from_port: int
    to_port: int
    source_group: str = ""
    cidr: str = ""
    description: str = ""


@dataclass
class SecurityGroup:
    group_id: str
    name: str
    vpc_id: str = ""
    ingress: list = field(default_factory=list)  # IngressRule
    egress: list = field(default_factory=list)  # IngressRule


@dataclass
class HealthcheckHost:
    instance_id: str
    lifecycle_state: str
    target_status: str
    health_status: str
    valid: bool


@dataclass
class PipelineResult:
    """Results from a pipeline run"""
    success: bool
    phases: list = field(default_factory=list)  # completed phase names
    created: dict = field(default_factory=dict)  # stack -> new resource names
    deleted: dict = field(default_factory=dict)  # stack -> deleted resource names
    error: Optional[str] = None
    failed_phase: Optional[str] = None
    history: list = field(default_factory=list)
