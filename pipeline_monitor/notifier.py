import base64
import binascii
import dataclasses
import logging
import threading
import typing

import botocore.exceptions
import slack_sdk.webhook

from pipeline_monitor.events import PipelineExecutionEvent, PipelineExecutionState

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class WebhookDecryptionError(Exception):
    function_name: str
    reason: str

    def __str__(self) -> str:
        return f"decrypting webhook url failed [function_name: {self.function_name}, reason: {self.reason}]"


@dataclasses.dataclass
class SendPipelineNotificationError(Exception):
    execution_id: str
    status_code: int
    response_content: str

    def __str__(self) -> str:
        return f"send pipeline notification to webhook failed [execution_id: {self.execution_id}, status_code: {self.status_code}, response_content: {self.response_content}]"


class DecryptedWebhookUrl:
    """
    The webhook URL, decrypted with KMS on first use and cached for the life of the process.

    Concurrent first callers block on the lock so KMS is called once. A failed decryption
    is not cached; the next call tries again.
    """

    def __init__(self, kms_client, ciphertext: str, function_name: str):
        self._kms_client = kms_client
        self._ciphertext = ciphertext
        self._function_name = function_name
        self._lock = threading.Lock()
        self._value: typing.Optional[str] = None

    def get(self) -> str:
        if self._value is None:
            with self._lock:
                if self._value is None:
                    self._value = self._decrypt()

        return self._value

    def _decrypt(self) -> str:
        logger.info(
            "decrypting webhook url", extra={"function_name": self._function_name}
        )

        try:
            response = self._kms_client.decrypt(
                CiphertextBlob=base64.b64decode(self._ciphertext, validate=True),
                EncryptionContext={"LambdaFunctionName": self._function_name},
            )
        except (binascii.Error, botocore.exceptions.ClientError) as e:
            logger.exception(
                "decrypting webhook url failed",
                extra={"function_name": self._function_name},
            )

            raise WebhookDecryptionError(
                function_name=self._function_name, reason=str(e)
            ) from e

        return response["Plaintext"].decode("utf-8")


_MESSAGE_TEMPLATES = {
    PipelineExecutionState.STARTED: "Pipeline *{pipeline}* in account *{account}* in region *{region}* has entered the state *STARTED* with execution ID *{execution_id}*.",
    PipelineExecutionState.SUCCEEDED: "Pipeline *{pipeline}* in account *{account}* in region *{region}* has *SUCCEEDED* with execution ID *{execution_id}*.",
    PipelineExecutionState.FAILED: "Pipeline *{pipeline}* in account *{account}* in region *{region}* has *FAILED* with execution ID *{execution_id}*.",
    PipelineExecutionState.CANCELED: "Pipeline *{pipeline}* in account *{account}* in region *{region}* has been *CANCELED* with execution ID *{execution_id}*.",
}

_UNKNOWN_STATE_TEMPLATE = "Pipeline *{pipeline}* in account *{account}* in region *{region}* has entered an unknown state *{state}* with execution ID *{execution_id}*."


def build_message(event: PipelineExecutionEvent) -> str:
    template = _MESSAGE_TEMPLATES.get(event.lifecycle_state)

    if template is None:
        logger.warning(
            "detected unknown pipeline state",
            extra={"execution_id": event.execution_id, "state": event.raw_state},
        )

        template = _UNKNOWN_STATE_TEMPLATE

    return template.format(
        pipeline=event.pipeline_name,
        account=event.account_id,
        region=event.region,
        state=event.raw_state,
        execution_id=event.execution_id,
    )


class NotificationDispatcher:
    def __init__(self, webhook_url: DecryptedWebhookUrl):
        self.webhook_url = webhook_url

    def notify(self, event: PipelineExecutionEvent) -> None:
        message = build_message(event)

        # failed sends go back to the queue for redelivery instead of being retried here
        webhook_client = slack_sdk.webhook.WebhookClient(
            url=self.webhook_url.get(), retry_handlers=[]
        )

        logger.info(
            "sending pipeline notification",
            extra={"execution_id": event.execution_id, "state": event.raw_state},
        )

        try:
            response = webhook_client.send(
                text=message, headers={"Content-Type": "application/json"}
            )
        except OSError:
            logger.exception(
                "sending pipeline notification failed",
                extra={"execution_id": event.execution_id, "text": message},
            )

            raise

        if response.status_code != 200:
            logger.error(
                "pipeline notification rejected",
                extra={
                    "execution_id": event.execution_id,
                    "status_code": response.status_code,
                    "body": response.body,
                },
            )

            raise SendPipelineNotificationError(
                execution_id=event.execution_id,
                status_code=response.status_code,
                response_content=response.body,
            )

        logger.info(
            "sent pipeline notification",
            extra={"execution_id": event.execution_id},
        )
