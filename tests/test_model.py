import pytest

from falconagent.model import (
    MetricValue,
    agent_metrics,
    counter_value,
    gauge_value,
    new_metric_value,
)


def test_gauge_value_has_gauge_type():
    mv = gauge_value("load.1min", 0.5)
    assert mv.counter_type == "GAUGE"
    assert mv.metric == "load.1min"
    assert mv.value == 0.5
    assert mv.tags == ""


def test_counter_value_has_counter_type():
    mv = counter_value("net.if.in.bytes", 10, "iface=eth0")
    assert mv.counter_type == "COUNTER"
    assert mv.tags == "iface=eth0"


def test_tags_are_joined_with_commas():
    mv = new_metric_value("m", 1, "GAUGE", "mount=/", "fstype=ext4")
    assert mv.tags == "mount=/,fstype=ext4"


def test_agent_metrics():
    (alive,) = agent_metrics()
    assert (alive.metric, alive.value, alive.counter_type) == ("agent.alive", 1, "GAUGE")


def test_to_dict_uses_wire_keys():
    data = counter_value("cpu.switches", 7, "a=b").to_dict()
    assert data["counterType"] == "COUNTER"
    assert set(data) == {"endpoint", "metric", "value", "step", "counterType", "tags", "timestamp"}


def test_round_trip():
    mv = MetricValue(
        metric="df.bytes.used",
        value=12,
        counter_type="GAUGE",
        tags="mount=/",
        endpoint="host-a",
        step=60,
        timestamp=1500000000,
    )
    assert MetricValue.from_dict(mv.to_dict()) == mv


def test_from_dict_missing_fields_are_zero():
    mv = MetricValue.from_dict({"metric": "x"})
    assert mv == MetricValue(metric="x")


@pytest.mark.parametrize(
    "data",
    [
        ["metric"],
        {"metric": 1},
        {"step": "60"},
        {"timestamp": True},
        {"counterType": 3},
    ],
)
def test_from_dict_rejects_bad_input(data):
    with pytest.raises(ValueError):
        MetricValue.from_dict(data)