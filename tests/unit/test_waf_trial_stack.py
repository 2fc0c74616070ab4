import logging
from dataclasses import replace

import aws_cdk as core
import aws_cdk.assertions as assertions
import pytest
from aws_cdk.assertions import Match

from configs.models import AccessConfig, BastionConfig, InfrastructureSpec, LoggingConfig, WafConfig
from stacks.waf_trial.waf_trial_stack import WafTrialStack
from stacks.waf_trial.web_acl_rules import EXCLUDED_COMMON_RULES


def synth(infra_config=None):
    app = core.App()
    stack = WafTrialStack(app, "waf-trial", infra_config=infra_config or InfrastructureSpec())
    return stack, assertions.Template.from_stack(stack)


def logical_id(stack, construct):
    return stack.get_logical_id(construct.node.default_child)


def group_id_of(stack, security_group):
    return {"Fn::GetAtt": [logical_id(stack, security_group), "GroupId"]}


def ingress_rules(stack, template, security_group):
    """Inline and standalone ingress rules attached to a security group."""
    resources = template.to_json()["Resources"]
    inline = resources[logical_id(stack, security_group)]["Properties"].get("SecurityGroupIngress", [])
    standalone = template.find_resources("AWS::EC2::SecurityGroupIngress", {
        "Properties": {"GroupId": group_id_of(stack, security_group)},
    })
    return list(inline) + [resource["Properties"] for resource in standalone.values()]


@pytest.fixture(scope="module")
def default_stack():
    return synth()


@pytest.fixture(scope="module")
def stack(default_stack):
    return default_stack[0]


@pytest.fixture(scope="module")
def template(default_stack):
    return default_stack[1]


def test_vpc_is_public_only_without_nat(template):
    template.has_resource_properties("AWS::EC2::VPC", {"CidrBlock": "10.0.0.0/16"})
    template.resource_count_is("AWS::EC2::NatGateway", 0)
    template.resource_count_is("AWS::EC2::Subnet", 2)
    template.all_resources_properties("AWS::EC2::Subnet", {"MapPublicIpOnLaunch": True})


def test_prefix_list_holds_only_the_bastion_eip(stack, template):
    eip_id = stack.get_logical_id(stack.bastion_eip)
    template.has_resource_properties("AWS::EC2::PrefixList", {
        "AddressFamily": "IPv4",
        "MaxEntries": 1,
        "PrefixListName": "waf-trial-prefix-list",
        "Entries": [{"Cidr": {"Fn::Join": ["", [{"Ref": eip_id}, "/32"]]}}],
    })


def test_bastion_has_no_ingress_without_sources(stack, template):
    assert ingress_rules(stack, template, stack.bastion_sg) == []


def test_missing_sources_are_logged(caplog):
    with caplog.at_level(logging.WARNING):
        synth()
    assert "no ingress rules" in caplog.text


def test_bastion_allows_ssh_port_from_allowed_ip():
    stack, template = synth(InfrastructureSpec(access=AccessConfig(allowed_ip="203.0.113.10/32")))
    (rule,) = ingress_rules(stack, template, stack.bastion_sg)
    assert rule["CidrIp"] == "203.0.113.10/32"
    assert (rule["IpProtocol"], rule["FromPort"], rule["ToPort"]) == ("tcp", 443, 443)


def test_bastion_allows_ssh_port_from_prefix_list():
    stack, template = synth(InfrastructureSpec(access=AccessConfig(allowed_prefix_id="pl-0123456789abcdef0")))
    (rule,) = ingress_rules(stack, template, stack.bastion_sg)
    assert rule["SourcePrefixListId"] == "pl-0123456789abcdef0"
    assert (rule["IpProtocol"], rule["FromPort"], rule["ToPort"]) == ("tcp", 443, 443)
    assert "CidrIp" not in rule


def test_bastion_allows_both_sources():
    access = AccessConfig(allowed_ip="198.51.100.0/24", allowed_prefix_id="pl-0123456789abcdef0")
    stack, template = synth(InfrastructureSpec(access=access))
    ingress = ingress_rules(stack, template, stack.bastion_sg)
    assert len(ingress) == 2
    assert {(rule["FromPort"], rule["ToPort"]) for rule in ingress} == {(443, 443)}
    sources = {rule.get("CidrIp") or rule.get("SourcePrefixListId") for rule in ingress}
    assert sources == {"198.51.100.0/24", "pl-0123456789abcdef0"}


def test_bastion_boots_with_sshd_on_443(template):
    instances = template.find_resources("AWS::EC2::Instance")
    (instance,) = instances.values()
    assert instance["Properties"]["InstanceType"] == "t3.nano"
    user_data = instance["Properties"]["UserData"]["Fn::Base64"]
    assert "Port 443" in user_data
    assert "systemctl restart sshd" in user_data
    template.has_resource_properties("AWS::EC2::EIPAssociation", {
        "InstanceId": {"Ref": Match.any_value()},
    })


def test_bastion_role_has_session_manager(template):
    template.has_resource_properties("AWS::IAM::Role", {
        "AssumeRolePolicyDocument": Match.object_like({
            "Statement": [Match.object_like({"Principal": {"Service": "ec2.amazonaws.com"}})],
        }),
        "ManagedPolicyArns": [
            {"Fn::Join": ["", ["arn:", {"Ref": "AWS::Partition"}, ":iam::aws:policy/AmazonSSMManagedInstanceCore"]]},
        ],
    })


def test_key_pair_is_created_and_published(template):
    template.has_resource_properties("AWS::EC2::KeyPair", {"KeyName": "waf-trial-key-pair"})
    assert template.find_outputs("BastionKeyPairParameter")


def test_existing_key_pair_is_imported():
    _, template = synth(InfrastructureSpec(bastion=BastionConfig(existing_key_name="operator-key")))
    template.resource_count_is("AWS::EC2::KeyPair", 0)
    template.has_resource_properties("AWS::EC2::Instance", {"KeyName": "operator-key"})
    assert template.find_outputs("BastionKeyPairParameter") == {}


def test_web_acl_rules_are_fixed(template):
    acls = template.find_resources("AWS::WAFv2::WebACL")
    (acl,) = acls.values()
    props = acl["Properties"]
    assert props["Scope"] == "REGIONAL"
    assert props["DefaultAction"] == {"Allow": {}}

    rules = props["Rules"]
    assert [(r["Name"], r["Priority"]) for r in rules] == [
        ("AWSManagedRulesCommonRuleSet", 1),
        ("AWSManagedRulesSQLiRuleSet", 2),
    ]
    assert all(r["OverrideAction"] == {"None": {}} for r in rules)
    assert "ExcludedRules" not in rules[1]["Statement"]["ManagedRuleGroupStatement"]


@pytest.mark.parametrize("infra_config", [
    InfrastructureSpec(),
    InfrastructureSpec(waf=WafConfig(name="OtherAcl", cloudwatch_metrics_enabled=True)),
    InfrastructureSpec(access=AccessConfig(allowed_ip="203.0.113.10/32")),
])
def test_common_rule_set_always_excludes_size_restrictions(infra_config):
    _, template = synth(infra_config)
    (acl,) = template.find_resources("AWS::WAFv2::WebACL").values()
    common = acl["Properties"]["Rules"][0]["Statement"]["ManagedRuleGroupStatement"]
    excluded = [rule["Name"] for rule in common["ExcludedRules"]]
    assert excluded == list(EXCLUDED_COMMON_RULES)
    assert set(excluded) == {
        "SizeRestrictions_QUERYSTRING",
        "SizeRestrictions_Cookie_HEADER",
        "SizeRestrictions_BODY",
        "SizeRestrictions_URIPATH",
    }


def test_single_association_on_protected_alb_after_acl(stack, template):
    template.resource_count_is("AWS::WAFv2::WebACLAssociation", 1)
    acl_id = stack.get_logical_id(stack.web_acl)
    (association,) = template.find_resources("AWS::WAFv2::WebACLAssociation").values()
    assert acl_id in association["DependsOn"]
    assert association["Properties"]["ResourceArn"] == {"Ref": logical_id(stack, stack.waf_alb)}
    assert association["Properties"]["WebACLArn"] == {"Fn::GetAtt": [acl_id, "Arn"]}


def listener_targets(stack, template, alb):
    """Map listener port to the target group properties it forwards to."""
    listeners = template.find_resources("AWS::ElasticLoadBalancingV2::Listener", {
        "Properties": {"LoadBalancerArn": {"Ref": logical_id(stack, alb)}},
    })
    target_groups = template.find_resources("AWS::ElasticLoadBalancingV2::TargetGroup")
    routes = {}
    for listener in listeners.values():
        (action,) = listener["Properties"]["DefaultActions"]
        tg_id = action["TargetGroupArn"]["Ref"]
        routes[listener["Properties"]["Port"]] = (tg_id, target_groups[tg_id]["Properties"])
    return routes


def test_listeners_route_to_expected_ports(stack, template):
    waf_routes = listener_targets(stack, template, stack.waf_alb)
    raw_routes = listener_targets(stack, template, stack.raw_alb)
    assert sorted(waf_routes) == [80, 9090]
    assert sorted(raw_routes) == [80]
    assert waf_routes[9090][1]["Port"] == 9090
    assert waf_routes[9090][1]["HealthCheckPath"] == "/WebWolf"


def test_both_albs_share_backend_routing(stack, template):
    _, waf_tg = listener_targets(stack, template, stack.waf_alb)[80]
    _, raw_tg = listener_targets(stack, template, stack.raw_alb)[80]
    for key in ("Port", "Protocol", "TargetType", "HealthCheckPath", "Matcher"):
        assert waf_tg[key] == raw_tg[key]
    assert waf_tg["Port"] == 8080
    assert waf_tg["HealthCheckPath"] == "/WebGoat"
    assert waf_tg["Matcher"] == {"HttpCode": "200-499"}
    assert waf_tg["TargetType"] == "ip"


def test_service_registered_with_every_target_group(stack, template):
    waf_routes = listener_targets(stack, template, stack.waf_alb)
    raw_routes = listener_targets(stack, template, stack.raw_alb)
    (service,) = template.find_resources("AWS::ECS::Service").values()
    registered = {
        (lb["TargetGroupArn"]["Ref"], lb["ContainerPort"])
        for lb in service["Properties"]["LoadBalancers"]
    }
    assert registered == {
        (waf_routes[80][0], 8080),
        (waf_routes[9090][0], 9090),
        (raw_routes[80][0], 8080),
    }
    assert all(lb["ContainerName"] == "WebGoatContainer" for lb in service["Properties"]["LoadBalancers"])


def test_fargate_service_capacity(template):
    template.has_resource_properties("AWS::ECS::Service", {
        "LaunchType": "FARGATE",
        "DesiredCount": 1,
        "DeploymentConfiguration": Match.object_like({
            "MinimumHealthyPercent": 100,
            "MaximumPercent": 200,
        }),
        "NetworkConfiguration": {
            "AwsvpcConfiguration": Match.object_like({"AssignPublicIp": "ENABLED"}),
        },
    })


def test_task_definition_runs_webgoat(template):
    template.has_resource_properties("AWS::ECS::TaskDefinition", {
        "Cpu": "1024",
        "Memory": "2048",
        "ContainerDefinitions": [Match.object_like({
            "Name": "WebGoatContainer",
            "Image": "webgoat/webgoat:v2023.8",
            "PortMappings": [
                Match.object_like({"ContainerPort": 8080, "Protocol": "tcp"}),
                Match.object_like({"ContainerPort": 9090, "Protocol": "tcp"}),
            ],
            "Environment": Match.array_with([
                {"Name": "WEBGOAT_HOST", "Value": "www.webgoat.local"},
                {"Name": "WEBWOLF_HOST", "Value": "www.webwolf.local"},
            ]),
            "LogConfiguration": Match.object_like({"LogDriver": "awslogs"}),
        })],
    })
    template.has_resource_properties("AWS::Logs::LogGroup", {"RetentionInDays": 7})
    template.has_resource_properties("AWS::ECS::Cluster", {"ClusterName": "waf-trial-cluster"})


def test_workload_ingress_has_exactly_three_sources(stack, template):
    service_sg = stack.service_sg
    template.has_resource_properties("AWS::EC2::SecurityGroup", {
        "GroupDescription": "Security group for WebGoat Fargate service",
        "SecurityGroupIngress": Match.absent(),
    })
    ingress = template.find_resources("AWS::EC2::SecurityGroupIngress", {
        "Properties": {"GroupId": group_id_of(stack, service_sg)},
    })
    rules = {
        (
            props["SourceSecurityGroupId"]["Fn::GetAtt"][0],
            props["IpProtocol"],
            props.get("FromPort"),
        )
        for props in (resource["Properties"] for resource in ingress.values())
    }

    waf_alb_sg = logical_id(stack, stack.waf_alb.connections.security_groups[0])
    raw_alb_sg = logical_id(stack, stack.raw_alb.connections.security_groups[0])
    bastion_sg = logical_id(stack, stack.bastion_sg)
    assert rules == {
        (waf_alb_sg, "tcp", 8080),
        (waf_alb_sg, "tcp", 9090),
        (raw_alb_sg, "tcp", 8080),
        (bastion_sg, "-1", None),
    }
    assert len({source for source, _, _ in rules}) == 3


@pytest.mark.parametrize("alb_attr,ports", [("waf_alb", {80, 9090}), ("raw_alb", {80})])
def test_albs_only_accept_bastion_prefix_list(stack, template, alb_attr, ports):
    alb_sg = getattr(stack, alb_attr).connections.security_groups[0]
    ingress = ingress_rules(stack, template, alb_sg)
    prefix_list_ref = {"Fn::GetAtt": [stack.get_logical_id(stack.bastion_prefix_list), "PrefixListId"]}
    assert len(ingress) == len(ports)
    assert {rule["FromPort"] for rule in ingress} == ports
    assert all(rule.get("SourcePrefixListId") == prefix_list_ref for rule in ingress)
    assert all("CidrIp" not in rule for rule in ingress)


def test_outputs(stack, template):
    template.has_output("LoadBalancerWafDomainName", {
        "Value": {"Fn::GetAtt": [logical_id(stack, stack.waf_alb), "DNSName"]},
    })
    template.has_output("LoadBalancerRawDomainName", {
        "Value": {"Fn::GetAtt": [logical_id(stack, stack.raw_alb), "DNSName"]},
    })
    template.has_output("BastionServerEIP", {
        "Value": {"Ref": stack.get_logical_id(stack.bastion_eip)},
    })
    template.has_output("WebACLArn", {
        "Value": {"Fn::GetAtt": [stack.get_logical_id(stack.web_acl), "Arn"]},
    })


def test_unsupported_log_retention_is_rejected():
    with pytest.raises(ValueError, match="retention"):
        synth(replace(InfrastructureSpec(), logging=LoggingConfig(retention_days=4)))
