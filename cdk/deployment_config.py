import pathlib
import typing

import pydantic


class DeploymentConfig(pydantic.BaseModel):
    prefix: str = pydantic.Field(alias="prefix")
    env_name: str = pydantic.Field(alias="env-name")
    region: str = pydantic.Field(alias="region")
    devops_account: str = pydantic.Field(alias="devops-account")
    target_account: str = pydantic.Field(alias="target-account")
    pipeline_name: str = pydantic.Field(alias="pipeline-name")
    monitoring_event_bus_name: str = pydantic.Field(
        alias="monitoring-event-bus-name", default="monitoring-central-event-bus"
    )
    notification_email: typing.Optional[str] = pydantic.Field(
        alias="notification-email", default=None
    )
    encrypted_webhook_url: str = pydantic.Field(alias="encrypted-webhook-url")
    sentry_dsn_secret_arn: typing.Optional[str] = pydantic.Field(
        alias="sentry-dsn-secret-arn", default=None
    )

    @classmethod
    def load(cls, env_name: str, directory: str = "./config") -> "DeploymentConfig":
        path = pathlib.Path(directory) / f"{env_name}.json"

        return cls.model_validate_json(path.read_text())
