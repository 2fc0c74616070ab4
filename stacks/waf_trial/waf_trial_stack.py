# File: stacks/waf_trial/waf_trial_stack.py

from typing import Optional

from aws_cdk import (
    Stack,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_logs as logs,
    aws_wafv2 as wafv2,
    CfnOutput,
    RemovalPolicy,
)
from constructs import Construct
from configs.config import AppConfigs
from configs.models import InfrastructureSpec
from stacks.waf_trial.bastion_user_data import bastion_user_data
from stacks.waf_trial.web_acl_rules import build_managed_rules
from utils.logger import configure_logger

LOGGER = configure_logger(__name__)

CONTAINER_NAME = "WebGoatContainer"


class WafTrialStack(Stack):
    """
    WebGoat behind two load balancers, one with a WAF web ACL and one without:
    - Public-only VPC, no NAT
    - Bastion with sshd on port 443 and an elastic IP
    - Single-entry prefix list holding the bastion EIP, the only source the ALBs accept
    - WebGoat/WebWolf on Fargate registered with three target groups
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        account_name: str = "sandbox",
        infra_config: Optional[InfrastructureSpec] = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Load configuration from infrastructure.yaml unless the caller resolved it already
        if infra_config is None:
            infra_config = AppConfigs().get_infrastructure_info(account_name)
        self.infra_config: InfrastructureSpec = infra_config
        self.account_name = account_name

        self.create_vpc()
        self.create_bastion()
        self.create_workload()

        # Web ACL must exist before the association on the protected ALB
        self.create_web_acl()
        self.create_load_balancers()
        self.associate_web_acl()

        self.create_target_groups()
        self.create_service_security_group()
        self.create_fargate_service()
        self.allow_bastion_prefix_list()

        self.create_outputs()

    def create_vpc(self):
        """Create VPC with public subnets only"""

        vpc_config = self.infra_config.vpc
        self.vpc = ec2.Vpc(
            self,
            "WafTrialVpc",
            vpc_name=vpc_config.name,
            ip_addresses=ec2.IpAddresses.cidr(vpc_config.cidr),
            max_azs=vpc_config.max_azs,
            nat_gateways=vpc_config.nat_gateways,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name=vpc_config.subnet_name,
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=vpc_config.subnet_mask,
                    map_public_ip_on_launch=True,
                ),
            ],
        )
        self.public_subnets = ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC)

    def create_bastion(self):
        """Create bastion instance, its EIP, and the prefix list derived from the EIP"""

        bastion_config = self.infra_config.bastion
        access = self.infra_config.access

        self.bastion_eip = ec2.CfnEIP(self, "BastionServerEip", domain="vpc")

        self.bastion_prefix_list = ec2.CfnPrefixList(
            self,
            "BastionPrefixList",
            address_family="IPv4",
            max_entries=1,
            entries=[
                ec2.CfnPrefixList.EntryProperty(cidr=f"{self.bastion_eip.ref}/32"),
            ],
            prefix_list_name=bastion_config.prefix_list_name,
        )

        if bastion_config.existing_key_name:
            self.bastion_key_pair = ec2.KeyPair.from_key_pair_name(
                self, "BastionKeyPair", bastion_config.existing_key_name
            )
            self.created_key_pair = None
        else:
            self.created_key_pair = ec2.KeyPair(
                self,
                "BastionKeyPair",
                key_pair_name=bastion_config.key_pair_name,
            )
            self.bastion_key_pair = self.created_key_pair

        self.bastion_sg = ec2.SecurityGroup(
            self,
            "BastionSecurityGroup",
            vpc=self.vpc,
            description="security group for waf trial bastion",
            security_group_name=bastion_config.security_group_name,
            allow_all_outbound=True,
        )

        ssh_port = ec2.Port.tcp(bastion_config.ssh_port)
        if access.allowed_ip:
            self.bastion_sg.add_ingress_rule(
                peer=ec2.Peer.ipv4(access.allowed_ip),
                connection=ssh_port,
                description="allow ssh access from allowed ip",
            )
            LOGGER.info(f"Bastion SSH allowed from {access.allowed_ip}")

        if access.allowed_prefix_id:
            self.bastion_sg.add_ingress_rule(
                peer=ec2.Peer.prefix_list(access.allowed_prefix_id),
                connection=ssh_port,
                description="allow ssh access from allowed prefix list",
            )
            LOGGER.info(f"Bastion SSH allowed from prefix list {access.allowed_prefix_id}")

        if not access.has_sources:
            LOGGER.warning(
                "No allowed_ip or allowed_prefix_id configured: bastion security group has no ingress rules"
            )

        # Session Manager stays available even if the sshd remap fails
        self.bastion_role = iam.Role(
            self,
            "BastionInstanceRole",
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name("AmazonSSMManagedInstanceCore"),
            ],
        )

        self.bastion_instance = ec2.Instance(
            self,
            "BastionServer",
            vpc=self.vpc,
            vpc_subnets=self.public_subnets,
            instance_type=ec2.InstanceType.of(
                getattr(ec2.InstanceClass, bastion_config.instance_class),
                getattr(ec2.InstanceSize, bastion_config.instance_size),
            ),
            machine_image=ec2.MachineImage.latest_amazon_linux2023(),
            key_pair=self.bastion_key_pair,
            security_group=self.bastion_sg,
            role=self.bastion_role,
            user_data=bastion_user_data(bastion_config.ssh_port),
        )

        ec2.CfnEIPAssociation(
            self,
            "BastionServerEipAssociation",
            allocation_id=self.bastion_eip.attr_allocation_id,
            instance_id=self.bastion_instance.instance_id,
        )

    def create_workload(self):
        """Create ECS cluster and the WebGoat/WebWolf task definition"""

        workload = self.infra_config.workload

        self.cluster = ecs.Cluster(
            self,
            "WafTrialCluster",
            cluster_name=workload.cluster_name,
            vpc=self.vpc,
        )

        self.task_definition = ecs.FargateTaskDefinition(
            self,
            "WebGoatTaskDefinition",
            cpu=workload.cpu,
            memory_limit_mib=workload.memory_limit_mib,
        )

        self.container_log_group = logs.LogGroup(
            self,
            "WebGoatLogGroup",
            log_group_name=self.infra_config.logging.log_group_name,
            retention=self.retention_days(self.infra_config.logging.retention_days),
            removal_policy=RemovalPolicy.DESTROY,
        )

        self.container = self.task_definition.add_container(
            CONTAINER_NAME,
            image=ecs.ContainerImage.from_registry(workload.image),
            port_mappings=[
                ecs.PortMapping(container_port=workload.webgoat_port, protocol=ecs.Protocol.TCP),
                ecs.PortMapping(container_port=workload.webwolf_port, protocol=ecs.Protocol.TCP),
            ],
            environment={
                "WEBGOAT_HOST": workload.webgoat_host,
                "WEBWOLF_HOST": workload.webwolf_host,
            },
            logging=ecs.LogDrivers.aws_logs(
                stream_prefix="webgoat",
                log_group=self.container_log_group,
            ),
        )

    @staticmethod
    def retention_days(days: int) -> logs.RetentionDays:
        retention_mapping = {
            1: logs.RetentionDays.ONE_DAY,
            3: logs.RetentionDays.THREE_DAYS,
            5: logs.RetentionDays.FIVE_DAYS,
            7: logs.RetentionDays.ONE_WEEK,
            14: logs.RetentionDays.TWO_WEEKS,
            30: logs.RetentionDays.ONE_MONTH,
            60: logs.RetentionDays.TWO_MONTHS,
            90: logs.RetentionDays.THREE_MONTHS,
            180: logs.RetentionDays.SIX_MONTHS,
            365: logs.RetentionDays.ONE_YEAR,
        }
        if days not in retention_mapping:
            raise ValueError(
                f"Unsupported log retention of {days} days, use one of {sorted(retention_mapping)}"
            )
        return retention_mapping[days]

    def create_web_acl(self):
        """Create WAF v2 Web ACL with the managed rule groups"""

        waf_config = self.infra_config.waf

        self.web_acl = wafv2.CfnWebACL(
            self,
            "WebGoatWebAcl",
            scope="REGIONAL",
            name=waf_config.name,
            default_action=wafv2.CfnWebACL.DefaultActionProperty(allow={}),
            rules=build_managed_rules(),
            visibility_config=wafv2.CfnWebACL.VisibilityConfigProperty(
                cloud_watch_metrics_enabled=waf_config.cloudwatch_metrics_enabled,
                sampled_requests_enabled=waf_config.sampled_requests_enabled,
                metric_name=waf_config.metric_name,
            ),
        )

    def create_load_balancers(self):
        """Create the WAF protected ALB and its unprotected twin"""

        self.waf_alb = elbv2.ApplicationLoadBalancer(
            self,
            "WebGoatWafLoadBalancer",
            vpc=self.vpc,
            internet_facing=True,
            vpc_subnets=self.public_subnets,
        )

        self.raw_alb = elbv2.ApplicationLoadBalancer(
            self,
            "WebGoatRawLoadBalancer",
            vpc=self.vpc,
            internet_facing=True,
            vpc_subnets=self.public_subnets,
        )

    def associate_web_acl(self):
        """Associate the Web ACL with the protected ALB only"""

        self.web_acl_association = wafv2.CfnWebACLAssociation(
            self,
            "WebAclAssociation",
            resource_arn=self.waf_alb.load_balancer_arn,
            web_acl_arn=self.web_acl.attr_arn,
        )
        self.web_acl_association.add_resource_dependency(self.web_acl)

    def target_group(self, construct_id, port, health_check_path):
        workload = self.infra_config.workload
        return elbv2.ApplicationTargetGroup(
            self,
            construct_id,
            vpc=self.vpc,
            port=port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            target_type=elbv2.TargetType.IP,
            health_check=elbv2.HealthCheck(
                path=health_check_path,
                healthy_http_codes=workload.healthy_http_codes,
            ),
        )

    def create_target_groups(self):
        """Create target groups and the listeners forwarding to them"""

        workload = self.infra_config.workload

        self.webgoat_tg = self.target_group("WebGoatTargetGroup", workload.webgoat_port, workload.webgoat_health_path)
        self.webwolf_tg = self.target_group("WebWolfTargetGroup", workload.webwolf_port, workload.webwolf_health_path)
        self.webgoat_raw_tg = self.target_group("WebGoatRawTargetGroup", workload.webgoat_port, workload.webgoat_health_path)

        # open=False: the only ingress is the bastion prefix list added later
        self.webgoat_listener = self.waf_alb.add_listener(
            "WebGoatListener",
            port=80,
            protocol=elbv2.ApplicationProtocol.HTTP,
            open=False,
            default_action=elbv2.ListenerAction.forward([self.webgoat_tg]),
        )

        self.webwolf_listener = self.waf_alb.add_listener(
            "WebWolfListener",
            port=workload.webwolf_port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            open=False,
            default_action=elbv2.ListenerAction.forward([self.webwolf_tg]),
        )

        self.raw_listener = self.raw_alb.add_listener(
            "RawListener",
            port=80,
            protocol=elbv2.ApplicationProtocol.HTTP,
            open=False,
            default_action=elbv2.ListenerAction.forward([self.webgoat_raw_tg]),
        )

    def create_service_security_group(self):
        """Service accepts the two ALBs on app ports and the bastion on everything"""

        workload = self.infra_config.workload

        self.service_sg = ec2.SecurityGroup(
            self,
            "FargateServiceSecurityGroup",
            vpc=self.vpc,
            description="Security group for WebGoat Fargate service",
            allow_all_outbound=True,
        )

        self.service_sg.connections.allow_from(
            self.waf_alb, ec2.Port.tcp(workload.webgoat_port), "WebGoat from WAF ALB"
        )
        self.service_sg.connections.allow_from(
            self.waf_alb, ec2.Port.tcp(workload.webwolf_port), "WebWolf from WAF ALB"
        )
        self.service_sg.connections.allow_from(
            self.raw_alb, ec2.Port.tcp(workload.webgoat_port), "WebGoat from raw ALB"
        )
        self.service_sg.connections.allow_from(
            self.bastion_sg, ec2.Port.all_traffic(), "Operator access from bastion"
        )

    def create_fargate_service(self):
        """Run WebGoat on Fargate and register it with every target group"""

        workload = self.infra_config.workload

        self.fargate_service = ecs.FargateService(
            self,
            "WebGoatService",
            cluster=self.cluster,
            task_definition=self.task_definition,
            desired_count=workload.desired_count,
            min_healthy_percent=100,
            max_healthy_percent=200,
            assign_public_ip=True,
            vpc_subnets=self.public_subnets,
            security_groups=[self.service_sg],
        )

        # Name the container port for each group, the default target would always pick the first mapping
        registrations = [
            (self.webgoat_tg, workload.webgoat_port),
            (self.webwolf_tg, workload.webwolf_port),
            (self.webgoat_raw_tg, workload.webgoat_port),
        ]
        for target_group, container_port in registrations:
            self.fargate_service.load_balancer_target(
                container_name=CONTAINER_NAME,
                container_port=container_port,
            ).attach_to_application_target_group(target_group)

    def allow_bastion_prefix_list(self):
        """Both ALBs only accept traffic from the bastion EIP prefix list"""

        bastion_peer = ec2.Peer.prefix_list(self.bastion_prefix_list.attr_prefix_list_id)
        workload = self.infra_config.workload

        self.waf_alb.connections.allow_from(
            bastion_peer, ec2.Port.tcp(80), "allow http access from bastion server prefix list"
        )
        self.waf_alb.connections.allow_from(
            bastion_peer, ec2.Port.tcp(workload.webwolf_port), "allow webwolf access from bastion server prefix list"
        )
        self.raw_alb.connections.allow_from(
            bastion_peer, ec2.Port.tcp(80), "allow http access from bastion server prefix list"
        )

    def create_outputs(self):
        """Create outputs"""

        CfnOutput(
            self,
            "LoadBalancerWafDomainName",
            value=self.waf_alb.load_balancer_dns_name,
            description="DNS name of the WAF protected ALB",
        )

        CfnOutput(
            self,
            "LoadBalancerRawDomainName",
            value=self.raw_alb.load_balancer_dns_name,
            description="DNS name of the unprotected ALB",
        )

        CfnOutput(
            self,
            "BastionServerEIP",
            value=self.bastion_eip.ref,
            description="Bastion elastic IP",
        )

        CfnOutput(
            self,
            "WebACLArn",
            value=self.web_acl.attr_arn,
            description="WAF Web ACL ARN",
        )

        CfnOutput(
            self,
            "BastionSshCommand",
            value=f"ssh -p {self.infra_config.bastion.ssh_port} ec2-user@{self.bastion_eip.ref}",
            description="SSH command for the bastion (sshd listens on the remapped port)",
        )

        if self.created_key_pair is not None:
            CfnOutput(
                self,
                "BastionKeyPairParameter",
                value=self.created_key_pair.private_key.parameter_name,
                description="SSM parameter holding the bastion private key",
            )
