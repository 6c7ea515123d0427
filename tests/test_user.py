from __future__ import annotations

import asyncio
from collections import Counter

import pytest

import tms_load
from tms_load import (
    ErrorKind,
    FatalConfigurationError,
    RoundRobinSelector,
    RuntimeConfig,
    Scenario,
    TransactionOutcome,
    UserState,
    VirtualUser,
    WeightedSelector,
    transaction,
)


def _static(name, ok=True):
    async def fn(user):
        return TransactionOutcome(name=name, ok=ok, elapsed=0.001, status=200 if ok else None,
                                  error=None if ok else ErrorKind.TRANSPORT)
    return transaction(fn, name)


A = Scenario("a", (_static("a1"),), weight=3)
B = Scenario("b", (_static("b1"),), weight=1)


def test_scenario_validation():
    with pytest.raises(ValueError):
        Scenario("empty", ())
    with pytest.raises(ValueError):
        Scenario("zero", (_static("x"),), weight=0)
    assert Scenario("one", [_static("x")]).weight == 1


def test_weighted_selector_is_reproducible():
    s1, s2 = WeightedSelector([A, B], seed=42), WeightedSelector([A, B], seed=42)
    first = [s1.next().name for _ in range(50)]
    assert first == [s2.next().name for _ in range(50)]
    assert set(first) == {"a", "b"}


def test_weighted_selector_follows_weights():
    selector = WeightedSelector([A, B], seed=1)
    counts = Counter(selector.next().name for _ in range(4000))
    assert 2700 < counts["a"] < 3300
    assert 700 < counts["b"] < 1300


def test_round_robin_expands_weights_in_order():
    a = Scenario("a", (_static("a1"),), weight=2)
    selector = RoundRobinSelector([a, B])
    assert [selector.next().name for _ in range(6)] == ["a", "a", "b", "a", "a", "b"]


def test_round_robin_seed_rotates_start():
    a = Scenario("a", (_static("a1"),), weight=2)
    selector = RoundRobinSelector([a, B], seed=2)
    assert [selector.next().name for _ in range(3)] == ["b", "a", "a"]


def test_selector_needs_scenarios():
    with pytest.raises(ValueError):
        WeightedSelector([])


@pytest.mark.asyncio
async def test_outcomes_follow_scenario_order(config):
    flow = Scenario("flow", (_static("login"), _static("browse"), _static("logout")))
    seen = []
    user = VirtualUser(1, config, "http://tms", RoundRobinSelector([flow]),
                       outcome_listener=lambda uid, o: seen.append((uid, o.name)))
    await user.run(asyncio.Event(), iterations=4)
    assert seen == [(1, n) for n in ["login", "browse", "logout"] * 4]
    assert user.iterations == 4
    assert user.metrics.total == 12
    assert user.state is UserState.TERMINATED
    assert user.session is not None and user.session.closed


@pytest.mark.asyncio
async def test_failures_do_not_stop_the_loop(config, sink):
    async def boom(user):
        raise RuntimeError("kaboom")

    flaky = Scenario("flaky", (transaction(boom), _static("down", ok=False)))
    user = VirtualUser(1, config, "http://tms", RoundRobinSelector([flaky]), sink=sink)
    metrics = await user.run(asyncio.Event(), iterations=3)
    assert metrics.total == 6
    assert metrics.received == 0
    assert metrics.failures == {"TransactionError": 3, "TransportError": 3}
    assert user.by_transaction["boom"].failures["TransactionError"] == 3
    assert any("kaboom" in line for line in sink.of("error"))


@pytest.mark.asyncio
async def test_stop_is_honoured_between_transactions(config):
    stop = asyncio.Event()

    async def first(user):
        stop.set()
        await asyncio.sleep(0.01)
        return TransactionOutcome(name="first", ok=True, elapsed=0.01, status=200)

    scenario = Scenario("s", (transaction(first), _static("second")))
    seen = []
    user = VirtualUser(1, config, "http://tms", RoundRobinSelector([scenario]),
                       outcome_listener=lambda uid, o: seen.append(o.name))
    await user.run(stop)
    assert seen == ["first"]
    assert user.iterations == 0
    assert user.state is UserState.TERMINATED


@pytest.mark.asyncio
async def test_pending_start_is_cut_short_by_stop(config):
    stop = asyncio.Event()
    stop.set()
    user = VirtualUser(1, config, "http://tms", RoundRobinSelector([A]))
    metrics = await user.run(stop, start_delay=10)
    assert metrics.total == 0
    assert user.session is None
    assert user.state is UserState.TERMINATED


@pytest.mark.asyncio
async def test_missing_credential_propagates():
    async def needs_admin(user):
        user.config.require(tms_load.ADMIN_ID)

    scenario = Scenario("admin", (transaction(needs_admin),))
    user = VirtualUser(1, RuntimeConfig(), "http://tms", RoundRobinSelector([scenario]))
    with pytest.raises(FatalConfigurationError):
        await user.run(asyncio.Event(), iterations=1)
    assert user.state is UserState.TERMINATED
    assert user.session.closed


@pytest.mark.asyncio
async def test_client_transaction_without_secret_issues_no_request(target_factory):
    target = await target_factory()
    config = RuntimeConfig.from_env({tms_load.TENANT: "test", tms_load.CLIENT_ID: "testclient1"})
    user = VirtualUser(1, config, target.base_url, RoundRobinSelector(tms_load.default_scenarios()))
    with pytest.raises(FatalConfigurationError) as exc:
        await user.run(asyncio.Event(), iterations=1)
    assert exc.value.key == tms_load.CLIENT_SECRET
    assert target.hits == []


@pytest.mark.asyncio
async def test_default_transactions_hit_the_target(target_factory, config):
    target = await target_factory()
    user = VirtualUser(1, config, target.base_url, RoundRobinSelector(tms_load.default_scenarios()))
    metrics = await user.run(asyncio.Event(), iterations=2)
    assert [path for path, _ in target.hits] == ["/v1/tms/client/testclient1", "/v1/tms/version"]
    assert "X-TMS-TENANT" not in target.hits[1][1]
    assert metrics.received == 2
    assert set(user.by_transaction) == {"get_tms_client", "get_tms_version"}


@pytest.mark.asyncio
@pytest.mark.parametrize("verbose, expected", [("true", 1), ("false", 0)])
async def test_failure_diagnostics_follow_verbose(sink, verbose, expected):
    config = RuntimeConfig.from_env({tms_load.VERBOSE: verbose})
    scenario = Scenario("down", (_static("down", ok=False),))
    user = VirtualUser(7, config, "http://tms", RoundRobinSelector([scenario]), sink=sink)
    await user.run(asyncio.Event(), iterations=1)
    lines = [line for line in sink.of("verbose") if "TransportError" in line]
    assert len(lines) == expected
    if expected:
        assert lines[0].startswith("[U7] down")
