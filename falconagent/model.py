"""Metric values as sent to the transfer service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


def _str_field(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected a string")
    return value


def _int_field(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key}: expected an integer")
    return value


@dataclass
class MetricValue:
    """One sample of one metric."""

    metric: str = ""
    value: Any = None
    counter_type: str = ""
    tags: str = ""
    endpoint: str = ""
    step: int = 0
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return the wire form of this value."""
        return {
            "endpoint": self.endpoint,
            "metric": self.metric,
            "value": self.value,
            "step": self.step,
            "counterType": self.counter_type,
            "tags": self.tags,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Any) -> MetricValue:
        """Build a value from its wire form; raise ValueError if malformed."""
        if not isinstance(data, dict):
            raise ValueError("metric value must be a JSON object")
        return cls(
            metric=_str_field(data, "metric"),
            value=data.get("value"),
            counter_type=_str_field(data, "counterType"),
            tags=_str_field(data, "tags"),
            endpoint=_str_field(data, "endpoint"),
            step=_int_field(data, "step"),
            timestamp=_int_field(data, "timestamp"),
        )


def new_metric_value(metric: str, value: Any, data_type: str, *args: str) -> MetricValue:
    """Create a metric value; extra arguments are tags joined with commas."""
    return MetricValue(metric=metric, value=value, counter_type=data_type, tags=",".join(args))


def gauge_value(metric: str, value: Any, *args: str) -> MetricValue:
    return new_metric_value(metric, value, "GAUGE", *args)


def counter_value(metric: str, value: Any, *args: str) -> MetricValue:
    return new_metric_value(metric, value, "COUNTER", *args)


def agent_metrics() -> list[MetricValue]:
    """Report that the agent is alive."""
    return [gauge_value("agent.alive", 1)]