# File: stacks/waf_trial/web_acl_rules.py

from aws_cdk import aws_wafv2 as wafv2

COMMON_RULE_SET = "AWSManagedRulesCommonRuleSet"
SQLI_RULE_SET = "AWSManagedRulesSQLiRuleSet"

# Size checks are switched off on purpose: oversized payloads slip past the
# common rule set inspection window. This is the gap the trial demonstrates.
EXCLUDED_COMMON_RULES = (
    "SizeRestrictions_QUERYSTRING",
    "SizeRestrictions_Cookie_HEADER",
    "SizeRestrictions_BODY",
    "SizeRestrictions_URIPATH",
)


def managed_rule(name, priority, excluded_rules=()):
    """Reference an AWS managed rule group, keeping the group's own actions."""
    statement = wafv2.CfnWebACL.ManagedRuleGroupStatementProperty(
        vendor_name="AWS",
        name=name,
        excluded_rules=[
            wafv2.CfnWebACL.ExcludedRuleProperty(name=rule) for rule in excluded_rules
        ] or None,
    )
    return wafv2.CfnWebACL.RuleProperty(
        name=name,
        priority=priority,
        override_action=wafv2.CfnWebACL.OverrideActionProperty(none={}),
        statement=wafv2.CfnWebACL.StatementProperty(managed_rule_group_statement=statement),
        visibility_config=wafv2.CfnWebACL.VisibilityConfigProperty(
            cloud_watch_metrics_enabled=True,
            sampled_requests_enabled=True,
            metric_name=name,
        ),
    )


def build_managed_rules():
    """Rules for the trial web ACL, in evaluation order."""
    return [
        managed_rule(COMMON_RULE_SET, 1, excluded_rules=EXCLUDED_COMMON_RULES),
        managed_rule(SQLI_RULE_SET, 2),
    ]
