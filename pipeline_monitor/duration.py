import logging
import typing

logger = logging.getLogger(__name__)


def compute_duration_seconds(
    start_timestamp: typing.Optional[int], terminal_timestamp: int
) -> typing.Optional[float]:
    """
    Elapsed seconds between a recorded start and a terminal event, both in epoch milliseconds.

    Assumes the start was recorded before the terminal event. Returns None when there is no
    start to measure from, or when the result would be negative (clock skew, out-of-order
    or duplicate delivery); callers must not emit a metric in either case.
    """
    if start_timestamp is None:
        return None

    duration = (terminal_timestamp - start_timestamp) / 1000

    if duration < 0:
        logger.warning(
            "computed negative execution duration",
            extra={
                "start_timestamp": start_timestamp,
                "terminal_timestamp": terminal_timestamp,
                "duration": duration,
            },
        )

        return None

    return duration
