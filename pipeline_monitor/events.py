import dataclasses
import enum
import logging
import typing

import aws_lambda_powertools.utilities.parser.envelopes
import pydantic
from aws_lambda_powertools.utilities.parser.models import EventBridgeModel, SqsRecordModel
from aws_lambda_powertools.utilities.parser.types import Model

logger = logging.getLogger(__name__)


class PipelineExecutionState(str, enum.Enum):
    STARTED = "STARTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_raw(cls, value: str) -> "PipelineExecutionState":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self in (
            PipelineExecutionState.SUCCEEDED,
            PipelineExecutionState.FAILED,
            PipelineExecutionState.CANCELED,
        )


class PipelineExecutionDetail(pydantic.BaseModel):
    # undeclared fields are kept so the archived detail matches what was delivered
    model_config = pydantic.ConfigDict(populate_by_name=True, extra="allow")

    pipeline: str = pydantic.Field(min_length=1)
    execution_id: str = pydantic.Field(alias="execution-id", min_length=1)
    state: str = pydantic.Field(min_length=1)
    execution_trigger: typing.Optional[typing.Dict[str, typing.Any]] = pydantic.Field(
        alias="execution-trigger", default=None
    )
    version: typing.Optional[float] = None


class PipelineExecutionEvent(EventBridgeModel):
    """
    A CodePipeline "Pipeline Execution State Change" event as delivered by EventBridge.

    `detail.state` is kept as the raw string so that states this code does not know about
    can still be reported verbatim; use `lifecycle_state` for branching.
    """

    detail: PipelineExecutionDetail

    @property
    def pipeline_name(self) -> str:
        return self.detail.pipeline

    @property
    def execution_id(self) -> str:
        return self.detail.execution_id

    @property
    def raw_state(self) -> str:
        return self.detail.state

    @property
    def lifecycle_state(self) -> PipelineExecutionState:
        return PipelineExecutionState.from_raw(self.detail.state)

    @property
    def timestamp(self) -> int:
        """Event time in milliseconds since the epoch."""
        return int(round(self.time.timestamp() * 1000))

    @property
    def account_id(self) -> str:
        return self.account


@dataclasses.dataclass
class MalformedEventError(Exception):
    reason: str

    def __str__(self) -> str:
        return f"malformed pipeline execution event [reason: {self.reason}]"


def parse_event(
    data: typing.Union[str, bytes, typing.Mapping[str, typing.Any]],
) -> PipelineExecutionEvent:
    try:
        if isinstance(data, (str, bytes)):
            return PipelineExecutionEvent.model_validate_json(data)

        return PipelineExecutionEvent.model_validate(data)
    except pydantic.ValidationError as e:
        logger.warning("rejecting malformed event", extra={"errors": e.errors()})

        raise MalformedEventError(reason=str(e)) from e


class SqsEventBridgeEnvelope(aws_lambda_powertools.utilities.parser.envelopes.BaseEnvelope):
    """An SQS record whose body is a single EventBridge event."""

    def parse(
        self,
        data: typing.Optional[typing.Union[typing.Dict[str, typing.Any], typing.Any]],
        model: typing.Type[Model],
    ):
        sqs_record = SqsRecordModel.model_validate(data)

        return self._parse(data=sqs_record.body, model=model)
