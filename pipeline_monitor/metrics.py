import dataclasses
import logging

import botocore.exceptions
from aws_lambda_powertools.metrics import MetricUnit

logger = logging.getLogger(__name__)

PIPELINE_SUCCESS = "PipelineSuccess"
PIPELINE_FAILURE = "PipelineFailure"
PIPELINE_EXECUTION_DURATION = "PipelineExecutionDuration"


@dataclasses.dataclass(frozen=True)
class MetricSample:
    name: str
    pipeline_name: str
    value: float
    unit: MetricUnit

    @classmethod
    def success_count(cls, pipeline_name: str) -> "MetricSample":
        return cls(PIPELINE_SUCCESS, pipeline_name, 1, MetricUnit.Count)

    @classmethod
    def failure_count(cls, pipeline_name: str) -> "MetricSample":
        return cls(PIPELINE_FAILURE, pipeline_name, 1, MetricUnit.Count)

    @classmethod
    def duration_seconds(cls, pipeline_name: str, seconds: float) -> "MetricSample":
        return cls(PIPELINE_EXECUTION_DURATION, pipeline_name, seconds, MetricUnit.Seconds)


class MetricEmitter:
    """
    Publishes samples with PutMetricData.

    Failures are not retried here; a duplicate delivery of the same event will emit the
    same sample twice, which is accepted.
    """

    def __init__(self, cloudwatch_client, namespace: str = "PipelineMetrics"):
        self.cloudwatch_client = cloudwatch_client
        self.namespace = namespace

    def emit(self, sample: MetricSample) -> None:
        logger.info("emitting metric", extra={"sample": dataclasses.asdict(sample)})

        try:
            self.cloudwatch_client.put_metric_data(
                Namespace=self.namespace,
                MetricData=[
                    {
                        "MetricName": sample.name,
                        "Dimensions": [
                            {"Name": "PipelineName", "Value": sample.pipeline_name}
                        ],
                        "Unit": sample.unit.value,
                        "Value": sample.value,
                    }
                ],
            )
        except botocore.exceptions.ClientError:
            logger.exception(
                "emitting metric failed",
                extra={"namespace": self.namespace, "metric_name": sample.name},
            )

            raise
