import json
from unittest import mock

import botocore.exceptions
import pytest

from pipeline_monitor.archiver import ExecutionLogArchiver
from pipeline_monitor.events import parse_event
from pipeline_monitor.ledger import ExecutionLedger
from pipeline_monitor.metrics import MetricEmitter, MetricSample
from pipeline_monitor.notifier import NotificationDispatcher, WebhookDecryptionError
from pipeline_monitor.router import EventFanOutError, EventRouter


@pytest.fixture
def targets():
    return {
        "archiver": mock.create_autospec(ExecutionLogArchiver, instance=True),
        "dispatcher": mock.create_autospec(NotificationDispatcher, instance=True),
        "emitter": mock.create_autospec(MetricEmitter, instance=True),
        "ledger": mock.create_autospec(ExecutionLedger, instance=True),
    }


@pytest.fixture
def router(targets):
    return EventRouter(**targets)


def _emitted(targets):
    return [c.args[0] for c in targets["emitter"].emit.call_args_list]


def test_started_records_start(router, targets, raw_event_factory):
    router.route(
        parse_event(
            raw_event_factory(
                state="STARTED", execution_id="exec-1", time="1970-01-01T00:00:01Z"
            )
        )
    )

    targets["ledger"].record_start.assert_called_once_with("exec-1", 1_000)
    targets["emitter"].emit.assert_not_called()
    targets["dispatcher"].notify.assert_called_once()


def test_succeeded_emits_count_and_duration(router, targets, raw_event_factory):
    targets["ledger"].lookup_start.return_value = 1_000

    router.route(
        parse_event(raw_event_factory(state="SUCCEEDED", time="1970-01-01T00:00:05Z"))
    )

    assert _emitted(targets) == [
        MetricSample.success_count("dev-app-app-pipeline"),
        MetricSample.duration_seconds("dev-app-app-pipeline", 4.0),
    ]
    assert _emitted(targets)[1].value == 4.0


def test_failed_emits_failure_count(router, targets, raw_event_factory):
    targets["ledger"].lookup_start.return_value = 1_000

    router.route(
        parse_event(raw_event_factory(state="FAILED", time="1970-01-01T00:00:03Z"))
    )

    assert _emitted(targets) == [
        MetricSample.failure_count("dev-app-app-pipeline"),
        MetricSample.duration_seconds("dev-app-app-pipeline", 2.0),
    ]


def test_canceled_emits_duration_only(router, targets, raw_event_factory):
    targets["ledger"].lookup_start.return_value = 1_000

    router.route(
        parse_event(raw_event_factory(state="CANCELED", time="1970-01-01T00:00:02Z"))
    )

    assert _emitted(targets) == [
        MetricSample.duration_seconds("dev-app-app-pipeline", 1.0)
    ]


def test_terminal_without_start_emits_no_duration(router, targets, raw_event_factory):
    targets["ledger"].lookup_start.return_value = None

    router.route(parse_event(raw_event_factory(state="CANCELED")))

    targets["emitter"].emit.assert_not_called()


def test_negative_duration_is_not_emitted(router, targets, raw_event_factory):
    targets["ledger"].lookup_start.return_value = 9_000

    router.route(
        parse_event(raw_event_factory(state="CANCELED", time="1970-01-01T00:00:05Z"))
    )

    targets["emitter"].emit.assert_not_called()


def test_unknown_state_only_archives_and_notifies(router, targets, raw_event_factory):
    router.route(parse_event(raw_event_factory(state="PAUSED")))

    targets["ledger"].record_start.assert_not_called()
    targets["ledger"].lookup_start.assert_not_called()
    targets["emitter"].emit.assert_not_called()
    targets["archiver"].archive.assert_called_once()
    targets["dispatcher"].notify.assert_called_once()


def test_archives_detail_as_delivered(router, targets, raw_event_factory):
    raw = raw_event_factory(execution_id="exec-1", time="1970-01-01T00:00:01Z")
    raw["detail"]["pipeline-execution-attempt"] = 1.0
    raw["detail"]["start-time"] = "1970-01-01T00:00:00.500Z"

    router.route(parse_event(raw))

    kwargs = targets["archiver"].archive.call_args.kwargs

    assert kwargs["execution_id"] == "exec-1"
    assert kwargs["timestamp"] == 1_000
    assert json.loads(kwargs["payload"]) == raw["detail"]


def test_failed_target_does_not_stop_others(router, targets, raw_event_factory):
    targets["ledger"].lookup_start.return_value = 1_000
    targets["emitter"].emit.side_effect = botocore.exceptions.ClientError(
        {"Error": {"Code": "Throttling", "Message": "Rate exceeded"}}, "PutMetricData"
    )

    with pytest.raises(EventFanOutError) as excinfo:
        router.route(parse_event(raw_event_factory(state="SUCCEEDED")))

    targets["archiver"].archive.assert_called_once()
    targets["dispatcher"].notify.assert_called_once()
    assert list(excinfo.value.failures) == ["tracking"]
    assert isinstance(excinfo.value.__cause__, botocore.exceptions.ClientError)


def test_all_failures_are_reported(router, targets, raw_event_factory):
    targets["archiver"].archive.side_effect = botocore.exceptions.ClientError(
        {"Error": {"Code": "ServiceUnavailableException", "Message": "down"}},
        "PutLogEvents",
    )
    targets["dispatcher"].notify.side_effect = WebhookDecryptionError(
        function_name="f", reason="denied"
    )

    with pytest.raises(EventFanOutError) as excinfo:
        router.route(parse_event(raw_event_factory(execution_id="exec-1")))

    targets["ledger"].record_start.assert_called_once()
    assert set(excinfo.value.failures) == {"archive", "notification"}
    assert "exec-1" in str(excinfo.value)
