import logging
from datetime import timedelta

import aws_lambda_powertools
import aws_lambda_powertools.utilities.batch
import aws_lambda_powertools.utilities.data_classes.sqs_event
import aws_lambda_powertools.utilities.idempotency
import aws_lambda_powertools.utilities.parser
import aws_lambda_powertools.utilities.typing
import boto3
import botocore.config
import pydantic
import sentry_sdk
from aws_lambda_powertools.utilities import parameters
from sentry_sdk.integrations.aws_lambda import AwsLambdaIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from pipeline_monitor.archiver import ExecutionLogArchiver
from pipeline_monitor.config import MonitorConfig
from pipeline_monitor.events import (
    MalformedEventError,
    PipelineExecutionEvent,
    SqsEventBridgeEnvelope,
)
from pipeline_monitor.ledger import ExecutionLedger
from pipeline_monitor.logging_config import configure_logging
from pipeline_monitor.metrics import MetricEmitter
from pipeline_monitor.notifier import DecryptedWebhookUrl, NotificationDispatcher
from pipeline_monitor.router import EventRouter

configure_logging()

logger = logging.getLogger(__name__)

monitor_config = MonitorConfig.from_env()

if monitor_config.sentry_dsn_secret_arn:
    sentry_sdk.init(
        dsn=parameters.get_secret(monitor_config.sentry_dsn_secret_arn),
        environment=monitor_config.sentry_env,
        integrations=[
            AwsLambdaIntegration(),
            LoggingIntegration(event_level=logging.CRITICAL),
        ],
    )

processor = aws_lambda_powertools.utilities.batch.BatchProcessor(
    event_type=aws_lambda_powertools.utilities.batch.EventType.SQS
)

tracer = aws_lambda_powertools.Tracer()

dynamodb = aws_lambda_powertools.utilities.idempotency.DynamoDBPersistenceLayer(
    table_name=monitor_config.idempotency_table_name
)

config = aws_lambda_powertools.utilities.idempotency.IdempotencyConfig(
    event_key_jmespath="id", expires_after_seconds=3600
)

boto_config = botocore.config.Config(retries={"max_attempts": 3, "mode": "standard"})

# Module scope so that the decrypted webhook url survives across warm invocations
router = EventRouter(
    archiver=ExecutionLogArchiver(
        logs_client=boto3.client("logs", config=boto_config),
        log_group_name=monitor_config.pipeline_log_group_name,
    ),
    dispatcher=NotificationDispatcher(
        webhook_url=DecryptedWebhookUrl(
            kms_client=boto3.client("kms", config=boto_config),
            ciphertext=monitor_config.encrypted_webhook_url,
            function_name=monitor_config.function_name,
        )
    ),
    emitter=MetricEmitter(
        cloudwatch_client=boto3.client("cloudwatch", config=boto_config),
        namespace=monitor_config.metrics_namespace,
    ),
    ledger=ExecutionLedger(
        table_name=monitor_config.execution_ledger_table_name,
        retention=timedelta(days=monitor_config.ledger_retention_days),
    ),
)


@tracer.capture_method
def record_handler(
    record: aws_lambda_powertools.utilities.data_classes.sqs_event.SQSRecord,
):
    try:
        event = aws_lambda_powertools.utilities.parser.parse(
            envelope=SqsEventBridgeEnvelope,
            event=dict(record),
            model=PipelineExecutionEvent,
        )
    except pydantic.ValidationError as e:
        logger.exception(
            "rejecting malformed pipeline event",
            extra={"message_id": record.message_id},
        )

        raise MalformedEventError(reason=str(e)) from e

    event_handler(event=event)


@aws_lambda_powertools.utilities.idempotency.idempotent_function(
    data_keyword_argument="event", config=config, persistence_store=dynamodb
)
def event_handler(event: PipelineExecutionEvent):
    logger.info("handling event", extra={"event": event})

    router.route(event)


@tracer.capture_lambda_handler
def handler(event, context: aws_lambda_powertools.utilities.typing.LambdaContext):
    config.register_lambda_context(lambda_context=context)

    logger.debug("event", extra={"event": event})

    return aws_lambda_powertools.utilities.batch.process_partial_response(
        event=event,
        record_handler=record_handler,
        processor=processor,
        context=context,
    )
