import json
import typing

import pytest


def build_raw_event(
    *,
    state: str = "STARTED",
    execution_id: str = "0f1c2d3e-4a5b-6c7d-8e9f-0a1b2c3d4e5f",
    pipeline: str = "dev-app-app-pipeline",
    time: str = "2024-03-01T12:00:00Z",
) -> typing.Dict[str, typing.Any]:
    return {
        "version": "0",
        "id": "6d6bb2e7-52fd-4e4a-b3a6-9c2f1e7d6a10",
        "detail-type": "CodePipeline Pipeline Execution State Change",
        "source": "aws.codepipeline",
        "account": "111111111111",
        "time": time,
        "region": "us-east-1",
        "resources": [f"arn:aws:codepipeline:us-east-1:111111111111:{pipeline}"],
        "detail": {
            "pipeline": pipeline,
            "execution-id": execution_id,
            "state": state,
            "version": 1.0,
        },
    }


@pytest.fixture
def raw_event_factory():
    return build_raw_event


@pytest.fixture
def sqs_record_factory():
    def build(body: typing.Dict[str, typing.Any]) -> typing.Dict[str, typing.Any]:
        return {
            "messageId": "059f36b4-87a3-44ab-83d2-661975830a7d",
            "receiptHandle": "AQEBwJnKyrHigUMZj6rYigCgxlaS3SLy0a",
            "body": json.dumps(body),
            "attributes": {
                "ApproximateReceiveCount": "1",
                "SentTimestamp": "1545082649183",
                "SenderId": "AIDAIENQZJOLO23YVJ4VO",
                "ApproximateFirstReceiveTimestamp": "1545082649185",
            },
            "messageAttributes": {},
            "md5OfBody": "e4e68fb7bd0e697a0ae8f1bb342846b3",
            "eventSource": "aws:sqs",
            "eventSourceARN": "arn:aws:sqs:us-east-1:111111111111:dev-app-pipeline-monitor-queue",
            "awsRegion": "us-east-1",
        }

    return build
