import logging
import os
import typing
from datetime import datetime, timedelta, timezone

import pynamodb.attributes
import pynamodb.exceptions
import pynamodb.models

logger = logging.getLogger(__name__)


class ExecutionStartModel(pynamodb.models.Model):
    class Meta:
        table_name = os.getenv("EXECUTION_LEDGER_TABLE_NAME")

    execution_id = pynamodb.attributes.UnicodeAttribute(
        hash_key=True, attr_name="executionId"
    )
    start_time = pynamodb.attributes.NumberAttribute(attr_name="startTime")
    expiration = pynamodb.attributes.TTLAttribute(null=True, attr_name="expiration")


class ExecutionLedger:
    """
    Durable map of execution id to the millisecond timestamp of its STARTED event.

    Entries are written once and never updated; the table's TTL on `expiration` evicts them.
    """

    def __init__(
        self,
        table_name: typing.Optional[str] = None,
        retention: timedelta = timedelta(days=30),
    ):
        if table_name:
            ExecutionStartModel.Meta.table_name = table_name

        self.retention = retention

    def record_start(self, execution_id: str, timestamp: int) -> bool:
        """Returns False when a start time was already recorded for the execution."""
        model = ExecutionStartModel(
            execution_id,
            start_time=timestamp,
            expiration=datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
            + self.retention,
        )

        logger.info(
            "recording execution start",
            extra={"execution_id": execution_id, "start_time": timestamp},
        )

        try:
            model.save(condition=ExecutionStartModel.execution_id.does_not_exist())
        except pynamodb.exceptions.PutError as e:
            if e.cause_response_code == "ConditionalCheckFailedException":
                logger.warning(
                    "execution start already recorded",
                    extra={"execution_id": execution_id},
                )

                return False

            logger.exception(
                "recording execution start failed",
                extra={"execution_id": execution_id},
            )

            raise

        return True

    def lookup_start(self, execution_id: str) -> typing.Optional[int]:
        try:
            model = ExecutionStartModel.get(execution_id, consistent_read=True)
        except ExecutionStartModel.DoesNotExist:
            logger.warning(
                "no start time recorded for execution",
                extra={"execution_id": execution_id},
            )

            return None

        return int(model.start_time)
