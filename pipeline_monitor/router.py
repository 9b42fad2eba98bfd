import dataclasses
import logging
import typing

from pipeline_monitor.archiver import ExecutionLogArchiver
from pipeline_monitor.duration import compute_duration_seconds
from pipeline_monitor.events import PipelineExecutionEvent, PipelineExecutionState
from pipeline_monitor.ledger import ExecutionLedger
from pipeline_monitor.metrics import MetricEmitter, MetricSample
from pipeline_monitor.notifier import NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class EventFanOutError(Exception):
    execution_id: str
    failures: typing.Mapping[str, Exception]

    def __str__(self) -> str:
        targets = ", ".join(
            f"{target}: {error!r}" for target, error in self.failures.items()
        )

        return f"pipeline event handling failed [execution_id: {self.execution_id}, failed_targets: {targets}]"


class EventRouter:
    """
    Delivers one lifecycle event to the archive, the ledger and metrics, and the notifier.

    The targets share no transaction. Each is attempted even if an earlier one failed; any
    failures are raised together afterwards so the transport redelivers the event.
    """

    def __init__(
        self,
        *,
        archiver: ExecutionLogArchiver,
        dispatcher: NotificationDispatcher,
        emitter: MetricEmitter,
        ledger: ExecutionLedger,
    ):
        self.archiver = archiver
        self.dispatcher = dispatcher
        self.emitter = emitter
        self.ledger = ledger

    def route(self, event: PipelineExecutionEvent) -> None:
        logger.info(
            "routing pipeline event",
            extra={
                "pipeline": event.pipeline_name,
                "execution_id": event.execution_id,
                "state": event.raw_state,
            },
        )

        targets: typing.Sequence[
            typing.Tuple[str, typing.Callable[[PipelineExecutionEvent], None]]
        ] = (
            ("archive", self._archive),
            ("tracking", self._track),
            ("notification", self.dispatcher.notify),
        )

        failures: typing.Dict[str, Exception] = {}

        for target, deliver in targets:
            try:
                deliver(event)
            except Exception as e:
                logger.exception(
                    "delivering pipeline event to target failed",
                    extra={"target": target, "execution_id": event.execution_id},
                )

                failures[target] = e

        if failures:
            raise EventFanOutError(
                execution_id=event.execution_id, failures=failures
            ) from next(iter(failures.values()))

    def _archive(self, event: PipelineExecutionEvent) -> None:
        self.archiver.archive(
            execution_id=event.execution_id,
            timestamp=event.timestamp,
            payload=event.detail.model_dump_json(
                by_alias=True, exclude_unset=True
            ),
        )

    def _track(self, event: PipelineExecutionEvent) -> None:
        state = event.lifecycle_state

        if state == PipelineExecutionState.STARTED:
            self.ledger.record_start(event.execution_id, event.timestamp)

            return

        if not state.is_terminal:
            logger.debug(
                "not tracking unknown state",
                extra={"execution_id": event.execution_id, "state": event.raw_state},
            )

            return

        if state == PipelineExecutionState.SUCCEEDED:
            self.emitter.emit(MetricSample.success_count(event.pipeline_name))
        elif state == PipelineExecutionState.FAILED:
            self.emitter.emit(MetricSample.failure_count(event.pipeline_name))

        duration = compute_duration_seconds(
            self.ledger.lookup_start(event.execution_id), event.timestamp
        )

        if duration is None:
            logger.info(
                "skipping duration metric",
                extra={"execution_id": event.execution_id},
            )

            return

        self.emitter.emit(MetricSample.duration_seconds(event.pipeline_name, duration))
