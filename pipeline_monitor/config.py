import os
import typing

import pydantic


class MonitorConfig(pydantic.BaseModel):
    """Runtime settings of the pipeline monitor function, read from its environment."""

    model_config = pydantic.ConfigDict(populate_by_name=True)

    execution_ledger_table_name: str = pydantic.Field(
        alias="EXECUTION_LEDGER_TABLE_NAME"
    )
    pipeline_log_group_name: str = pydantic.Field(alias="PIPELINE_LOG_GROUP_NAME")
    encrypted_webhook_url: str = pydantic.Field(alias="ENCRYPTED_WEBHOOK_URL")
    function_name: str = pydantic.Field(alias="AWS_LAMBDA_FUNCTION_NAME")
    idempotency_table_name: str = pydantic.Field(alias="IDEMPOTENCY_TABLE_NAME")
    metrics_namespace: str = pydantic.Field(
        alias="METRICS_NAMESPACE", default="PipelineMetrics"
    )
    ledger_retention_days: pydantic.PositiveInt = pydantic.Field(
        alias="LEDGER_RETENTION_DAYS", default=30
    )
    sentry_dsn_secret_arn: typing.Optional[str] = pydantic.Field(
        alias="SENTRY_DSN_SECRET_ARN", default=None
    )
    sentry_env: typing.Optional[str] = pydantic.Field(alias="SENTRY_ENV", default=None)

    @classmethod
    def from_env(
        cls, environ: typing.Optional[typing.Mapping[str, str]] = None
    ) -> "MonitorConfig":
        return cls.model_validate(dict(os.environ if environ is None else environ))
