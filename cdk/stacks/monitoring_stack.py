import os

import aws_cdk
import cdk_nag
import constructs

import cdk.constructs.monitoring_construct
from cdk.deployment_config import DeploymentConfig


class MonitoringStack(aws_cdk.Stack):
    def __init__(
        self,
        scope: constructs.Construct,
        id: str,
        *,
        deployment_config: DeploymentConfig,
        **kwargs,
    ):
        super().__init__(scope=scope, id=id, **kwargs)

        self.monitoring = cdk.constructs.monitoring_construct.MonitoringConstruct(
            scope=self,
            id="Monitoring",
            prefix=deployment_config.prefix,
            pipeline_name=deployment_config.pipeline_name,
            encrypted_webhook_url=deployment_config.encrypted_webhook_url,
            monitoring_event_bus_name=deployment_config.monitoring_event_bus_name,
            notification_email=deployment_config.notification_email,
            sentry_dsn_secret_arn=deployment_config.sentry_dsn_secret_arn,
            sentry_env=deployment_config.env_name,
        )

        aws_cdk.Aspects.of(self).add(cdk_nag.AwsSolutionsChecks(verbose=True))

        aws_cdk.Tags.of(self).add("ApplicationName", "Pipeline Monitor")
        aws_cdk.Tags.of(self).add("Environment", deployment_config.env_name)
        aws_cdk.Tags.of(self).add("Region", self.region)

        if os.getenv("VERSION"):
            aws_cdk.Tags.of(self).add("ApplicationVersion", os.getenv("VERSION"))
