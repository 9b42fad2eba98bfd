import enum
import logging

import botocore.exceptions

logger = logging.getLogger(__name__)


class StreamCreation(str, enum.Enum):
    CREATED = "CREATED"
    ALREADY_EXISTS = "ALREADY_EXISTS"


class ExecutionLogArchiver:
    """Appends raw lifecycle events to one CloudWatch Logs stream per execution."""

    def __init__(self, logs_client, log_group_name: str):
        self.logs_client = logs_client
        self.log_group_name = log_group_name

    def _create_stream(self, execution_id: str) -> StreamCreation:
        try:
            self.logs_client.create_log_stream(
                logGroupName=self.log_group_name, logStreamName=execution_id
            )
        except botocore.exceptions.ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceAlreadyExistsException":
                return StreamCreation.ALREADY_EXISTS

            raise

        return StreamCreation.CREATED

    def ensure_stream(self, execution_id: str) -> StreamCreation:
        try:
            outcome = self._create_stream(execution_id)
        except botocore.exceptions.ClientError:
            logger.exception(
                "creating log stream failed",
                extra={
                    "log_group_name": self.log_group_name,
                    "execution_id": execution_id,
                },
            )

            raise

        logger.info(
            "ensured log stream",
            extra={
                "log_group_name": self.log_group_name,
                "execution_id": execution_id,
                "outcome": outcome.value,
            },
        )

        return outcome

    def append(self, execution_id: str, timestamp: int, payload: str) -> None:
        try:
            response = self.logs_client.put_log_events(
                logGroupName=self.log_group_name,
                logStreamName=execution_id,
                logEvents=[{"timestamp": timestamp, "message": payload}],
            )
        except botocore.exceptions.ClientError:
            logger.exception(
                "putting log event failed",
                extra={
                    "log_group_name": self.log_group_name,
                    "execution_id": execution_id,
                },
            )

            raise

        rejected = response.get("rejectedLogEventsInfo")

        if rejected:
            logger.warning(
                "log event rejected",
                extra={"execution_id": execution_id, "rejected": rejected},
            )

    def archive(self, execution_id: str, timestamp: int, payload: str) -> None:
        self.ensure_stream(execution_id)
        self.append(execution_id, timestamp, payload)
