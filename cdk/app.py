#!/usr/bin/env python3
import aws_cdk

import cdk.stacks.monitoring_stack
import cdk.stacks.pipeline_stack
import cdk.stacks.target_foundation_stack
from cdk.deployment_config import DeploymentConfig
from pipeline_monitor.credentials import CrossAccountGrant

app = aws_cdk.App()

deployment_config = DeploymentConfig.load(app.node.try_get_context("config") or "dev")

grant = CrossAccountGrant(
    prefix=deployment_config.prefix,
    trusting_account=deployment_config.target_account,
    devops_account=deployment_config.devops_account,
)

devops_env = aws_cdk.Environment(
    account=deployment_config.devops_account, region=deployment_config.region
)

cdk.stacks.target_foundation_stack.TargetFoundationStack(
    scope=app,
    id=f"{deployment_config.prefix}-target-foundation",
    env=aws_cdk.Environment(
        account=deployment_config.target_account, region=deployment_config.region
    ),
    grant=grant,
)

cdk.stacks.pipeline_stack.PipelineStack(
    scope=app,
    id=f"{deployment_config.prefix}-pipeline",
    env=devops_env,
    deployment_config=deployment_config,
    grant=grant,
)

cdk.stacks.monitoring_stack.MonitoringStack(
    scope=app,
    id=f"{deployment_config.prefix}-pipeline-monitoring",
    env=devops_env,
    deployment_config=deployment_config,
)

app.synth()
