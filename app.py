#!/usr/bin/env python3
import os

import aws_cdk as cdk
from configs.config import AppConfigs, resolve_access

from stacks.waf_trial.waf_trial_stack import WafTrialStack

app = cdk.App()

# Account name selects the entry in configs/infrastructure.yaml
account_name = app.node.try_get_context("account") or os.getenv("DEPLOY_ACCOUNT", "sandbox")
config_loader = AppConfigs()
infra_config = config_loader.get_infrastructure_info(account_name)

# `cdk deploy -c allowedIP=... -c allowedPrefixID=...` wins over .env and YAML
infra_config.access = resolve_access(
    infra_config.access,
    allowed_ip=app.node.try_get_context("allowedIP"),
    allowed_prefix_id=app.node.try_get_context("allowedPrefixID"),
)

WafTrialStack(
    app,
    "WafTrialStack",
    account_name=account_name,
    infra_config=infra_config,
    env=cdk.Environment(
        account=infra_config.account,
        region=infra_config.region,
    ),
)

for key, value in infra_config.tags.items():
    cdk.Tags.of(app).add(key, str(value))

app.synth()
