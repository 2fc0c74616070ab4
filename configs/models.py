# File: configs/models.py

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class VpcConfig:
    cidr: str = "10.0.0.0/16"
    name: str = "wafTrialVPC"
    max_azs: int = 2
    subnet_mask: int = 24
    subnet_name: str = "waf-trial-public"
    nat_gateways: int = 0


@dataclass
class BastionConfig:
    instance_class: str = "BURSTABLE3"
    instance_size: str = "NANO"
    ssh_port: int = 443
    security_group_name: str = "waf-trial-ec2-sg"
    prefix_list_name: str = "waf-trial-prefix-list"
    key_pair_name: str = "waf-trial-key-pair"
    existing_key_name: Optional[str] = None  # Import this key pair instead of creating one


@dataclass
class AccessConfig:
    """Operator sources allowed to reach the bastion. Both optional."""
    allowed_ip: Optional[str] = None
    allowed_prefix_id: Optional[str] = None

    @property
    def has_sources(self) -> bool:
        return bool(self.allowed_ip or self.allowed_prefix_id)


@dataclass
class WorkloadConfig:
    cluster_name: str = "waf-trial-cluster"
    image: str = "webgoat/webgoat:v2023.8"
    cpu: int = 1024
    memory_limit_mib: int = 2048
    desired_count: int = 1
    webgoat_port: int = 8080
    webwolf_port: int = 9090
    webgoat_host: str = "www.webgoat.local"
    webwolf_host: str = "www.webwolf.local"
    webgoat_health_path: str = "/WebGoat"
    webwolf_health_path: str = "/WebWolf"
    healthy_http_codes: str = "200-499"


@dataclass
class WafConfig:
    name: str = "WebGoatWebAclName"
    metric_name: str = "WebGoatMetrics"
    # ACL level visibility; managed rules always publish their own metrics
    cloudwatch_metrics_enabled: bool = False
    sampled_requests_enabled: bool = False


@dataclass
class LoggingConfig:
    log_group_name: Optional[str] = None
    retention_days: int = 7


@dataclass
class InfrastructureSpec:
    account: Optional[str] = None
    region: Optional[str] = None
    vpc: VpcConfig = field(default_factory=VpcConfig)
    bastion: BastionConfig = field(default_factory=BastionConfig)
    access: AccessConfig = field(default_factory=AccessConfig)
    workload: WorkloadConfig = field(default_factory=WorkloadConfig)
    waf: WafConfig = field(default_factory=WafConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tags: dict = field(default_factory=dict)
