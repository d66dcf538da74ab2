import pytest

from taskfleet.core.entities.types import DemandSnapshot, PlannedLaunch
from taskfleet.core.scheduling import (
    NoDelayProvisioningStrategy,
    ProvisioningListener,
    ProvisioningSource,
    ProvisioningStrategy,
    apply_strategies,
    available_strategies,
    create_strategy,
    register_strategy,
    unregister_strategy,
)


class StubSource(ProvisioningSource):
    def __init__(self, name, *, capacity, labels=("linux",)):
        self.name = name
        self.capacity = capacity
        self.labels = set(labels)
        self.requests = []

    def can_serve(self, label):
        return label is None or label in self.labels

    def provision(self, label, excess):
        self.requests.append(excess)
        count = min(excess, self.capacity)
        return [PlannedLaunch(node_name=f"{self.name}-{index}", label=label) for index in range(count)]


class RecordingListener(ProvisioningListener):
    def __init__(self, blocked=None):
        self.blocked = blocked or {}
        self.started = []

    def can_provision(self, source, label):
        return self.blocked.get(source.name)

    def on_started(self, source, label, launches):
        self.started.append((source.name, [launch.node_name for launch in launches]))


def test_excess_accounts_for_available_and_connecting_capacity():
    snapshot = DemandSnapshot(label="linux", queue_length=7, available_capacity=1, connecting_capacity=2)
    assert snapshot.excess == 4


def test_no_delay_reports_remaining_demand():
    source = StubSource("small", capacity=3)
    listener = RecordingListener()
    snapshot = DemandSnapshot(label="linux", queue_length=5)

    decision = NoDelayProvisioningStrategy().apply(snapshot, [source], [listener])

    assert decision.remaining == 2
    assert decision.consult_remaining is True
    assert [launch.node_name for launch in decision.launches] == ["small-0", "small-1", "small-2"]
    assert listener.started == [("small", ["small-0", "small-1", "small-2"])]


def test_no_delay_moves_on_to_next_source():
    first = StubSource("first", capacity=2)
    second = StubSource("second", capacity=10)

    decision = NoDelayProvisioningStrategy().apply(DemandSnapshot(label="linux", queue_length=5), [first, second])

    assert decision.remaining == 0
    assert first.requests == [5]
    assert second.requests == [3]


def test_sources_that_cannot_serve_the_label_are_skipped():
    windows = StubSource("windows", capacity=5, labels=("windows",))
    linux = StubSource("linux", capacity=5)

    decision = NoDelayProvisioningStrategy().apply(DemandSnapshot(label="linux", queue_length=2), [windows, linux])

    assert windows.requests == []
    assert len(decision.launches) == 2


def test_blocked_source_is_skipped():
    blocked = StubSource("blocked", capacity=5)
    open_source = StubSource("open", capacity=5)
    listener = RecordingListener(blocked={"blocked": "quota exhausted"})

    decision = NoDelayProvisioningStrategy().apply(
        DemandSnapshot(label="linux", queue_length=1), [blocked, open_source], [listener]
    )

    assert blocked.requests == []
    assert [launch.node_name for launch in decision.launches] == ["open-0"]


def test_listener_errors_do_not_stop_provisioning(caplog):
    class Broken(ProvisioningListener):
        def on_started(self, source, label, launches):
            raise RuntimeError("boom")

    source = StubSource("source", capacity=1)
    decision = NoDelayProvisioningStrategy().apply(DemandSnapshot(label="linux", queue_length=1), [source], [Broken()])

    assert len(decision.launches) == 1
    assert "failed in on_started" in caplog.text


def test_no_demand_starts_nothing():
    source = StubSource("source", capacity=5)
    decision = NoDelayProvisioningStrategy().apply(
        DemandSnapshot(label="linux", queue_length=2, available_capacity=2), [source]
    )
    assert decision.launches == []
    assert decision.remaining == 0
    assert source.requests == []


def test_apply_strategies_stops_when_demand_is_met():
    calls = []

    class Recording(ProvisioningStrategy):
        def __init__(self, tag):
            self.tag = tag

        def apply(self, snapshot, sources, listeners=()):
            calls.append((self.tag, snapshot.excess))
            return NoDelayProvisioningStrategy().apply(snapshot, sources, listeners)

    source = StubSource("source", capacity=2)
    decision = apply_strategies(
        DemandSnapshot(label="linux", queue_length=3), [Recording("a"), Recording("b")], [source]
    )

    # second strategy sees the first one's launches as connecting capacity
    assert calls == [("a", 3), ("b", 1)]
    assert len(decision.launches) == 3
    assert decision.remaining == 0


def test_strategy_registry():
    assert "no_delay" in available_strategies()
    assert isinstance(create_strategy("  No_Delay "), NoDelayProvisioningStrategy)
    assert isinstance(create_strategy(NoDelayProvisioningStrategy), NoDelayProvisioningStrategy)

    with pytest.raises(ValueError):
        create_strategy("missing")
    with pytest.raises(ValueError):
        register_strategy("no_delay", NoDelayProvisioningStrategy)

    register_strategy("custom", NoDelayProvisioningStrategy)
    try:
        assert isinstance(create_strategy("custom"), NoDelayProvisioningStrategy)
    finally:
        unregister_strategy("custom")
    assert "custom" not in available_strategies()

    with pytest.raises(TypeError):
        create_strategy(lambda: object())
