import typing

import aws_cdk
import cdk_nag
import constructs
from aws_cdk import (
    aws_cloudwatch,
    aws_cloudwatch_actions,
    aws_dynamodb,
    aws_events,
    aws_events_targets,
    aws_iam,
    aws_kms,
    aws_lambda,
    aws_lambda_event_sources,
    aws_logs,
    aws_sns,
    aws_sns_subscriptions,
    aws_sqs,
)

METRICS_NAMESPACE = "PipelineMetrics"


class MonitoringConstruct(constructs.Construct):
    """
    Pipeline execution telemetry

    Routes the pipeline's execution state change events through a queue to a function that
    archives each event to a per-execution log stream, records start times, emits success,
    failure and duration metrics, and posts a message to a chat webhook.
    """

    def __init__(
        self,
        scope: constructs.Construct,
        id: str,
        *,
        prefix: str,
        pipeline_name: str,
        encrypted_webhook_url: str,
        monitoring_event_bus_name: str,
        notification_email: typing.Optional[str],
        sentry_dsn_secret_arn: typing.Optional[str],
        sentry_env: str,
    ):
        super().__init__(scope=scope, id=id)

        self._create_role_and_managed_policy(prefix=prefix)
        self._create_kms_key(prefix=prefix)
        self._create_dead_letter_queue(prefix=prefix)
        self._create_queue(prefix=prefix)
        self._create_event_rule(
            pipeline_name=pipeline_name,
            monitoring_event_bus_name=monitoring_event_bus_name,
        )
        self._create_ledger_table(prefix=prefix)
        self._create_idempotency_table(prefix=prefix)
        self._create_pipeline_log_group(pipeline_name=pipeline_name)
        self._create_function_log_group(prefix=prefix)
        self._create_function(
            prefix=prefix,
            encrypted_webhook_url=encrypted_webhook_url,
            sentry_dsn_secret_arn=sentry_dsn_secret_arn,
            sentry_env=sentry_env,
        )
        self._create_failure_alarm(
            prefix=prefix,
            pipeline_name=pipeline_name,
            notification_email=notification_email,
        )
        self._create_dashboard(prefix=prefix, pipeline_name=pipeline_name)

    def _create_role_and_managed_policy(self, prefix: str) -> None:
        """Create the role and managed policy for the pipeline monitor function"""
        self.monitor_role = aws_iam.Role(
            scope=self,
            id="Role",
            assumed_by=aws_iam.ServicePrincipal("lambda.amazonaws.com"),
            description="Pipeline monitor execution role.",
            role_name=f"{prefix}-pipeline-monitor-role",
        )

        self.monitor_function_execution_managed_policy = aws_iam.ManagedPolicy(
            scope=self,
            id="GeneralManagedPolicy",
            description="General managed policy for the pipeline monitor.",
            managed_policy_name=f"{prefix}-pipeline-monitor-execution-policy",
            roles=[self.monitor_role],
        )

    def _create_kms_key(self, prefix: str) -> None:
        """Create a KMS key for the pipeline monitor."""
        self.key = aws_kms.Key(
            scope=self,
            id="Key",
            description="Pipeline monitor key.",
            enable_key_rotation=True,
        )

        self.key_alias = self.key.add_alias(alias_name=f"{prefix}-pipeline-monitor-key")

        self.key_alias.grant_encrypt_decrypt(
            aws_iam.ServicePrincipal(f"logs.{aws_cdk.Aws.REGION}.amazonaws.com")
        )

        # Allow EventBridge to deliver to the encrypted queue
        self.key.grant_encrypt_decrypt(
            aws_iam.ServicePrincipal(service="events.amazonaws.com")
        )

        self.key.grant_encrypt_decrypt(self.monitor_function_execution_managed_policy)

        cdk_nag.NagSuppressions.add_resource_suppressions(
            construct=self.monitor_function_execution_managed_policy,
            suppressions=[
                cdk_nag.NagPackSuppression(
                    id="AwsSolutions-IAM5",
                    reason="Use case allows for wildcard actions",
                    applies_to=[
                        "Action::kms:GenerateDataKey*",
                        "Action::kms:ReEncrypt*",
                    ],
                )
            ],
        )

    def _create_dead_letter_queue(self, prefix: str) -> None:
        self.monitor_dead_letter_queue = aws_sqs.Queue(
            scope=self,
            id="DeadLetterQueue",
            encryption=aws_sqs.QueueEncryption.KMS,
            encryption_master_key=self.key,
            enforce_ssl=True,
            queue_name=f"{prefix}-pipeline-monitor-dlq",
        )

    def _create_queue(self, prefix: str) -> None:
        self.monitor_queue = aws_sqs.Queue(
            scope=self,
            id="PipelineEventQueue",
            dead_letter_queue=aws_sqs.DeadLetterQueue(
                max_receive_count=5, queue=self.monitor_dead_letter_queue
            ),
            encryption=aws_sqs.QueueEncryption.KMS,
            encryption_master_key=self.key,
            enforce_ssl=True,
            queue_name=f"{prefix}-pipeline-monitor-queue",
            visibility_timeout=aws_cdk.Duration.seconds(180),
        )

    def _create_event_rule(
        self, pipeline_name: str, monitoring_event_bus_name: str
    ) -> None:
        self.pipeline_event_rule = aws_events.Rule(
            scope=self,
            id="PipelineEventRule",
            event_bus=aws_events.EventBus.from_event_bus_name(
                scope=self, id="EventBus", event_bus_name=monitoring_event_bus_name
            ),
            event_pattern=aws_events.EventPattern(
                source=["aws.codepipeline"],
                detail_type=["CodePipeline Pipeline Execution State Change"],
                detail={
                    "pipeline": [pipeline_name],
                    "state": ["STARTED", "SUCCEEDED", "FAILED", "CANCELED"],
                },
            ),
        )

        self.pipeline_event_rule.add_target(
            aws_events_targets.SqsQueue(
                queue=self.monitor_queue,
                dead_letter_queue=self.monitor_dead_letter_queue,
            )
        )

    def _create_ledger_table(self, prefix: str) -> None:
        self.execution_ledger_table = aws_dynamodb.Table(
            scope=self,
            id="PipelineExecutionTable",
            table_name=f"{prefix}-pipeline-execution-ledger",
            partition_key=aws_dynamodb.Attribute(
                name="executionId", type=aws_dynamodb.AttributeType.STRING
            ),
            billing_mode=aws_dynamodb.BillingMode.PAY_PER_REQUEST,
            encryption=aws_dynamodb.TableEncryption.CUSTOMER_MANAGED,
            encryption_key=self.key,
            time_to_live_attribute="expiration",
            point_in_time_recovery=True,
        )

        self.execution_ledger_table.grant_read_write_data(
            self.monitor_function_execution_managed_policy
        )

    def _create_idempotency_table(self, prefix: str) -> None:
        self.idempotency_table = aws_dynamodb.Table(
            scope=self,
            id="PipelineEventIdempotencyTable",
            table_name=f"{prefix}-pipeline-event-idempotency",
            partition_key=aws_dynamodb.Attribute(
                name="id", type=aws_dynamodb.AttributeType.STRING
            ),
            billing_mode=aws_dynamodb.BillingMode.PAY_PER_REQUEST,
            encryption=aws_dynamodb.TableEncryption.CUSTOMER_MANAGED,
            encryption_key=self.key,
            time_to_live_attribute="expiration",
            point_in_time_recovery=True,
        )

        self.idempotency_table.grant_read_write_data(
            self.monitor_function_execution_managed_policy
        )

    def _create_pipeline_log_group(self, pipeline_name: str) -> None:
        self.pipeline_log_group = aws_logs.LogGroup(
            scope=self,
            id="PipelineLogGroup",
            log_group_name=f"/aws/codepipeline/{pipeline_name}",
            encryption_key=self.key,
            retention=aws_logs.RetentionDays.ONE_MONTH,
        )

        self.monitor_function_execution_managed_policy.add_statements(
            aws_iam.PolicyStatement(
                actions=["logs:CreateLogStream", "logs:PutLogEvents"],
                resources=[f"{self.pipeline_log_group.log_group_arn}:log-stream:*"],
            )
        )

    def _create_function_log_group(self, prefix: str) -> None:
        self.monitor_function_log_group = aws_logs.LogGroup(
            scope=self,
            id="PipelineMonitorLogGroup",
            log_group_name=f"/aws/lambda/{prefix}-pipeline-monitor",
            encryption_key=self.key,
            retention=aws_logs.RetentionDays.TWO_WEEKS,
        )

    def _create_function(
        self,
        prefix: str,
        encrypted_webhook_url: str,
        sentry_dsn_secret_arn: typing.Optional[str],
        sentry_env: str,
    ) -> None:
        self.monitor_function_log_group.grant_write(
            self.monitor_function_execution_managed_policy
        )

        self.monitor_queue.grant_consume_messages(
            self.monitor_function_execution_managed_policy
        )

        self.monitor_function_execution_managed_policy.add_statements(
            aws_iam.PolicyStatement(
                actions=["cloudwatch:PutMetricData"],
                conditions={
                    "StringEquals": {"cloudwatch:namespace": METRICS_NAMESPACE}
                },
                resources=["*"],
            )
        )

        environment = {
            "EXECUTION_LEDGER_TABLE_NAME": self.execution_ledger_table.table_name,
            "IDEMPOTENCY_TABLE_NAME": self.idempotency_table.table_name,
            "PIPELINE_LOG_GROUP_NAME": self.pipeline_log_group.log_group_name,
            "ENCRYPTED_WEBHOOK_URL": encrypted_webhook_url,
            "METRICS_NAMESPACE": METRICS_NAMESPACE,
            "LEDGER_RETENTION_DAYS": "30",
            "SENTRY_ENV": sentry_env,
            "POWERTOOLS_SERVICE_NAME": "pipeline-monitor",
        }

        if sentry_dsn_secret_arn:
            environment["SENTRY_DSN_SECRET_ARN"] = sentry_dsn_secret_arn

            self.monitor_function_execution_managed_policy.add_statements(
                aws_iam.PolicyStatement(
                    actions=["secretsmanager:GetSecretValue"],
                    resources=[sentry_dsn_secret_arn],
                )
            )

        cdk_nag.NagSuppressions.add_resource_suppressions(
            construct=self.monitor_function_execution_managed_policy,
            suppressions=[
                cdk_nag.NagPackSuppression(
                    id="AwsSolutions-IAM5",
                    reason="PutMetricData does not support resource scoping, it is conditioned on the namespace instead.",
                )
            ],
        )

        self.monitor_function = aws_lambda.Function(
            scope=self,
            id="Function",
            code=aws_lambda.Code.from_asset(
                path=".",
                bundling=aws_cdk.BundlingOptions(
                    image=aws_lambda.Runtime.PYTHON_3_12.bundling_image,
                    command=[
                        "bash",
                        "-c",
                        "pip install --no-cache-dir . -t /asset-output",
                    ],
                ),
                exclude=["cdk.out", "tests", ".git", ".venv"],
            ),
            handler="pipeline_monitor.lambda_handler.handler",
            runtime=aws_lambda.Runtime.PYTHON_3_12,
            architecture=aws_lambda.Architecture.X86_64,
            description="Tracks pipeline executions and sends notifications.",
            environment_encryption=self.key,
            environment=environment,
            function_name=f"{prefix}-pipeline-monitor",
            log_format=aws_lambda.LogFormat.JSON.value,
            log_group=self.monitor_function_log_group,
            system_log_level=aws_lambda.SystemLogLevel.INFO.value,
            application_log_level=aws_lambda.ApplicationLogLevel.DEBUG.value,
            role=self.monitor_role.without_policy_updates(),
            timeout=aws_cdk.Duration.seconds(30),
            tracing=aws_lambda.Tracing.ACTIVE,
        )

        self.monitor_function.node.add_dependency(
            self.monitor_function_execution_managed_policy
        )

        self.monitor_function.add_event_source(
            source=aws_lambda_event_sources.SqsEventSource(
                queue=self.monitor_queue, report_batch_item_failures=True
            )
        )

    def _metric(
        self, metric_name: str, statistic: str, pipeline_name: str
    ) -> aws_cloudwatch.Metric:
        # must match the dimensions the function publishes with
        return aws_cloudwatch.Metric(
            namespace=METRICS_NAMESPACE,
            metric_name=metric_name,
            statistic=statistic,
            dimensions_map={"PipelineName": pipeline_name},
        )

    def _create_failure_alarm(
        self,
        prefix: str,
        pipeline_name: str,
        notification_email: typing.Optional[str],
    ) -> None:
        self.failure_topic = aws_sns.Topic(
            scope=self,
            id="PipelineFailureTopic",
            display_name="Pipeline Failure Notifications",
            master_key=self.key,
            topic_name=f"{prefix}-pipeline-failure-topic",
        )

        self.key.grant_encrypt_decrypt(
            aws_iam.ServicePrincipal(service="cloudwatch.amazonaws.com")
        )

        if notification_email:
            self.failure_topic.add_subscription(
                aws_sns_subscriptions.EmailSubscription(notification_email)
            )

        self.failure_alarm = aws_cloudwatch.Alarm(
            scope=self,
            id="PipelineFailureAlarm",
            metric=self._metric("PipelineFailure", "Sum", pipeline_name),
            threshold=1,
            evaluation_periods=1,
            comparison_operator=aws_cloudwatch.ComparisonOperator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD,
            treat_missing_data=aws_cloudwatch.TreatMissingData.NOT_BREACHING,
            alarm_description="Alarm when the pipeline execution fails",
            actions_enabled=True,
        )

        self.failure_alarm.add_alarm_action(aws_cloudwatch_actions.SnsAction(self.failure_topic))

    def _create_dashboard(self, prefix: str, pipeline_name: str) -> None:
        self.dashboard = aws_cloudwatch.Dashboard(
            scope=self,
            id="PipelineDashboard",
            dashboard_name=f"{prefix}-pipeline-dashboard",
        )

        self.dashboard.add_widgets(
            aws_cloudwatch.GraphWidget(
                title="Pipeline Executions",
                left=[
                    self._metric("PipelineSuccess", "Sum", pipeline_name),
                    self._metric("PipelineFailure", "Sum", pipeline_name),
                ],
            )
        )

        self.dashboard.add_widgets(
            aws_cloudwatch.SingleValueWidget(
                title="Pipeline Success Count",
                metrics=[self._metric("PipelineSuccess", "Sum", pipeline_name)],
            ),
            aws_cloudwatch.SingleValueWidget(
                title="Pipeline Failure Count",
                metrics=[self._metric("PipelineFailure", "Sum", pipeline_name)],
            ),
        )

        self.dashboard.add_widgets(
            aws_cloudwatch.GraphWidget(
                title="Pipeline Duration",
                left=[self._metric("PipelineExecutionDuration", "Average", pipeline_name)],
            )
        )
