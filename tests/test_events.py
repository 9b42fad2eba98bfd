import json

import aws_lambda_powertools.utilities.parser
import pydantic
import pytest

from pipeline_monitor.events import (
    MalformedEventError,
    PipelineExecutionEvent,
    PipelineExecutionState,
    SqsEventBridgeEnvelope,
    parse_event,
)


def test_parse_event_maps_detail_fields(raw_event_factory):
    event = parse_event(raw_event_factory(state="SUCCEEDED", execution_id="exec-1"))

    assert event.pipeline_name == "dev-app-app-pipeline"
    assert event.execution_id == "exec-1"
    assert event.lifecycle_state == PipelineExecutionState.SUCCEEDED
    assert event.account_id == "111111111111"
    assert event.region == "us-east-1"


def test_timestamp_is_epoch_milliseconds(raw_event_factory):
    event = parse_event(raw_event_factory(time="1970-01-01T00:00:05Z"))

    assert event.timestamp == 5000


def test_parse_event_accepts_json_text(raw_event_factory):
    event = parse_event(json.dumps(raw_event_factory(state="FAILED")))

    assert event.lifecycle_state == PipelineExecutionState.FAILED


@pytest.mark.parametrize("state", ["PAUSED", "SUPERSEDED", "UNKNOWN"])
def test_unrecognized_state_is_unknown_but_kept_verbatim(raw_event_factory, state):
    event = parse_event(raw_event_factory(state=state))

    assert event.lifecycle_state == PipelineExecutionState.UNKNOWN
    assert event.raw_state == state
    assert not event.lifecycle_state.is_terminal


def test_terminal_states():
    assert PipelineExecutionState.SUCCEEDED.is_terminal
    assert PipelineExecutionState.FAILED.is_terminal
    assert PipelineExecutionState.CANCELED.is_terminal
    assert not PipelineExecutionState.STARTED.is_terminal


def test_missing_execution_id_is_malformed(raw_event_factory):
    raw = raw_event_factory()
    del raw["detail"]["execution-id"]

    with pytest.raises(MalformedEventError) as excinfo:
        parse_event(raw)

    assert "execution-id" in str(excinfo.value)


def test_empty_state_is_malformed(raw_event_factory):
    with pytest.raises(MalformedEventError):
        parse_event(raw_event_factory(state=""))


def test_unparseable_time_is_malformed(raw_event_factory):
    with pytest.raises(MalformedEventError):
        parse_event(raw_event_factory(time="yesterday"))


def test_sqs_envelope_unwraps_eventbridge_body(raw_event_factory, sqs_record_factory):
    record = sqs_record_factory(raw_event_factory(state="CANCELED", execution_id="exec-9"))

    event = aws_lambda_powertools.utilities.parser.parse(
        event=record, model=PipelineExecutionEvent, envelope=SqsEventBridgeEnvelope
    )

    assert event.execution_id == "exec-9"
    assert event.lifecycle_state == PipelineExecutionState.CANCELED


def test_sqs_envelope_rejects_invalid_body(sqs_record_factory):
    record = sqs_record_factory({"detail": {"pipeline": "p"}})

    with pytest.raises(pydantic.ValidationError):
        aws_lambda_powertools.utilities.parser.parse(
            event=record, model=PipelineExecutionEvent, envelope=SqsEventBridgeEnvelope
        )
