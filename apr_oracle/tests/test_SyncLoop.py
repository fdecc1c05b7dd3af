"""Unit tests for SyncLoop."""

import asyncio

import pytest

from apr_oracle.src.AprSource import AprSource
from apr_oracle.src.fetchers import FetcherError, FetcherMalformedError, FetchResult
from apr_oracle.src.LedgerPublisher import (
    ConfirmationTimeoutError,
    EncodingOverflowError,
    PublishReceipt,
    PublishRejectedError,
    encode_apr,
)
from apr_oracle.src.PublishedState import PublishedState
from apr_oracle.src.SyncLoop import SyncLoop, TickOutcome


class ScriptedFetcher:
    """Fetcher double that replays a list of values or errors."""

    def __init__(self, name: str, script: list):
        self.name = name
        self.script = list(script)
        self.calls = 0

    async def fetch(self) -> FetchResult:
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, Exception):
            return FetchResult.failed(self.name, item)
        return FetchResult.ok(self.name, item)


class FakePublisher:
    """Publisher double that records calls and replays outcomes."""

    def __init__(self, outcomes: list | None = None, gate: asyncio.Event | None = None):
        self.outcomes = list(outcomes or [])
        self.gate = gate
        self.calls: list[float] = []
        self.started = asyncio.Event()

    async def publish(self, value: float) -> PublishReceipt:
        self.calls.append(value)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return PublishReceipt(
            tx_hash=f"0x{len(self.calls):064x}",
            block_number=100 + len(self.calls),
            gas_used=28_000,
            encoded_value=encode_apr(value),
        )


def make_loop(current, sma=None, last=0.0, outcomes=None, **kwargs):
    fetchers = {"current": ScriptedFetcher("lido-last", current)}
    if sma is not None:
        fetchers["sma"] = ScriptedFetcher("lido-sma", sma)
    source = AprSource(fetchers, primary=kwargs.pop("primary", "current"))
    state = PublishedState(initial=last)
    publisher = FakePublisher(outcomes)
    loop = SyncLoop(source, state, publisher, **kwargs)
    return loop, state, publisher


def run_ticks(loop: SyncLoop, count: int):
    async def scenario():
        return [await loop.tick() for _ in range(count)]

    return asyncio.run(scenario())


def read(state: PublishedState) -> float:
    return asyncio.run(state.read())


class TestSyncLoopInit:
    def test_invalid_interval(self) -> None:
        with pytest.raises(ValueError, match="interval must be positive"):
            make_loop([0.03], interval=0)

    def test_invalid_epsilon(self) -> None:
        with pytest.raises(ValueError, match="epsilon must be non-negative"):
            make_loop([0.03], epsilon=-1)


class TestScenarios:
    """End-to-end tick scenarios."""

    def test_cold_start_publishes(self) -> None:
        """last=0.0, fetched=0.03: publish, state becomes 0.03."""
        loop, state, publisher = make_loop([0.03])
        (result,) = run_ticks(loop, 1)

        assert result.outcome is TickOutcome.PUBLISHED
        assert result.previous == 0.0
        assert result.fetched == 0.03
        assert result.receipt.encoded_value == encode_apr(0.03)
        assert publisher.calls == [0.03]
        assert read(state) == 0.03

    def test_sub_epsilon_change_is_noop(self) -> None:
        """last=0.03, fetched=0.030000000005: no publish."""
        loop, state, publisher = make_loop([0.030000000005], last=0.03)
        (result,) = run_ticks(loop, 1)

        assert result.outcome is TickOutcome.NO_CHANGE
        assert publisher.calls == []
        assert read(state) == 0.03

    def test_confirmation_timeout_then_retry(self) -> None:
        """ConfirmationTimeout keeps 0.03; the next tick retries 0.04."""
        loop, state, publisher = make_loop(
            [0.04],
            last=0.03,
            outcomes=[ConfirmationTimeoutError("0xdead", "no receipt after 120s")],
        )

        first, second = run_ticks(loop, 2)

        assert first.outcome is TickOutcome.PUBLISH_FAILED
        assert isinstance(first.error, ConfirmationTimeoutError)
        assert second.outcome is TickOutcome.PUBLISHED
        assert publisher.calls == [0.04, 0.04]
        assert read(state) == 0.04


class TestPublishDecision:
    """Property-style checks over (last, fetched) pairs."""

    @pytest.mark.parametrize(
        "last,fetched",
        [(0.03, 0.03), (0.03, 0.0300000009), (0.05, 0.0499999991), (0.1, 0.1 + 1e-12)],
    )
    def test_within_epsilon_never_publishes(self, last, fetched) -> None:
        loop, state, publisher = make_loop([fetched], last=last)
        results = run_ticks(loop, 3)

        assert all(r.outcome is TickOutcome.NO_CHANGE for r in results)
        assert publisher.calls == []
        assert read(state) == last

    @pytest.mark.parametrize(
        "last,fetched",
        [(0.0, 0.031), (0.03, 0.04), (0.04, 0.03), (0.03, 0.030000002)],
    )
    def test_beyond_epsilon_publishes_exactly_once(self, last, fetched) -> None:
        """A successful publish advances state once; repeats are no-ops."""
        loop, state, publisher = make_loop([fetched], last=last)
        results = run_ticks(loop, 3)

        assert [r.outcome for r in results] == [
            TickOutcome.PUBLISHED,
            TickOutcome.NO_CHANGE,
            TickOutcome.NO_CHANGE,
        ]
        assert publisher.calls == [fetched]
        assert read(state) == fetched

    @pytest.mark.parametrize(
        "error",
        [
            PublishRejectedError("nonce too low"),
            ConfirmationTimeoutError("0xabc", "timeout"),
            EncodingOverflowError("too big"),
        ],
    )
    def test_failed_publish_leaves_state_and_retries(self, error) -> None:
        loop, state, publisher = make_loop([0.04], last=0.03, outcomes=[error, error])
        results = run_ticks(loop, 2)

        assert all(r.outcome is TickOutcome.PUBLISH_FAILED for r in results)
        assert all(r.error is error for r in results)
        assert publisher.calls == [0.04, 0.04]
        assert read(state) == 0.03

    def test_custom_epsilon(self) -> None:
        loop, state, publisher = make_loop([0.031], last=0.03, epsilon=0.005)
        (result,) = run_ticks(loop, 1)

        assert result.outcome is TickOutcome.NO_CHANGE
        assert publisher.calls == []


class TestFetchFailures:
    """Fetch failures skip the tick without side effects."""

    def test_fetch_failure_skips_tick(self) -> None:
        loop, state, publisher = make_loop([FetcherError("connection reset")], last=0.03)
        (result,) = run_ticks(loop, 1)

        assert result.outcome is TickOutcome.FETCH_FAILED
        assert publisher.calls == []
        assert read(state) == 0.03

    def test_recovers_after_failure(self) -> None:
        loop, state, publisher = make_loop([FetcherMalformedError("bad body"), 0.035], last=0.03)
        first, second = run_ticks(loop, 2)

        assert first.outcome is TickOutcome.FETCH_FAILED
        assert second.outcome is TickOutcome.PUBLISHED
        assert read(state) == 0.035


class TestPartialFetch:
    """The driving metric decides; the other is informational."""

    def test_sma_failure_does_not_block_publish(self) -> None:
        loop, state, publisher = make_loop([0.03], sma=[FetcherError("sma down")])
        (result,) = run_ticks(loop, 1)

        assert result.outcome is TickOutcome.PUBLISHED
        assert read(state) == 0.03

    def test_current_failure_skips_even_with_sma(self) -> None:
        """The tick skips publishing but still reports the SMA value."""
        loop, state, publisher = make_loop([FetcherError("down")], sma=[0.029], last=0.03)
        (result,) = run_ticks(loop, 1)

        assert result.outcome is TickOutcome.FETCH_FAILED
        assert result.fetched is None
        assert result.informational.success
        assert result.informational.source == "lido-sma"
        assert result.informational.value == 0.029
        assert publisher.calls == []
        assert read(state) == 0.03

    def test_informational_reported_on_publish(self) -> None:
        loop, _, _ = make_loop([0.03], sma=[0.029])
        (result,) = run_ticks(loop, 1)

        assert result.outcome is TickOutcome.PUBLISHED
        assert result.informational.value == 0.029

    def test_total_failure_has_no_informational_value(self) -> None:
        loop, _, _ = make_loop([FetcherError("down")], sma=[FetcherError("sma down")])
        (result,) = run_ticks(loop, 1)

        assert result.outcome is TickOutcome.FETCH_FAILED
        assert not result.informational.success

    def test_sma_primary_drives_publish(self) -> None:
        loop, state, publisher = make_loop([0.031], sma=[0.029], primary="sma")
        run_ticks(loop, 1)

        assert publisher.calls == [0.029]
        assert read(state) == 0.029


class TestConcurrency:
    """Readers never see in-flight values."""

    def test_reader_during_publish_sees_old_value(self) -> None:
        async def scenario():
            gate = asyncio.Event()
            fetchers = {"current": ScriptedFetcher("lido-last", [0.04])}
            state = PublishedState(initial=0.03)
            publisher = FakePublisher(gate=gate)
            loop = SyncLoop(AprSource(fetchers), state, publisher)

            tick = asyncio.create_task(loop.tick())
            await publisher.started.wait()

            during = await asyncio.wait_for(state.read(), timeout=1.0)
            gate.set()
            result = await tick
            after = await state.read()
            return during, result, after

        during, result, after = asyncio.run(scenario())
        assert during == 0.03
        assert result.outcome is TickOutcome.PUBLISHED
        assert after == 0.04

    def test_abandoned_publish_leaves_state(self) -> None:
        """Cancelling mid-publish does not write the in-flight value."""

        async def scenario():
            fetchers = {"current": ScriptedFetcher("lido-last", [0.04])}
            state = PublishedState(initial=0.03)
            publisher = FakePublisher(gate=asyncio.Event())
            loop = SyncLoop(AprSource(fetchers), state, publisher)

            tick = asyncio.create_task(loop.tick())
            await publisher.started.wait()
            tick.cancel()
            with pytest.raises(asyncio.CancelledError):
                await tick
            return await state.read()

        assert asyncio.run(scenario()) == 0.03


class TestRun:
    """Test the cadence loop."""

    def test_runs_ticks_until_stopped(self) -> None:
        async def scenario():
            loop, state, publisher = make_loop([0.03, 0.03, 0.04], interval=0.01)
            task = asyncio.create_task(loop.run())
            while loop.ticks < 3:
                await asyncio.sleep(0.005)
            loop.stop()
            await asyncio.wait_for(task, timeout=1.0)
            return loop, publisher, await state.read()

        loop, publisher, value = asyncio.run(scenario())
        assert publisher.calls[:2] == [0.03, 0.04]
        assert value == 0.04
        assert loop.last_result is not None

    def test_unexpected_error_does_not_kill_loop(self) -> None:
        class ExplodingPublisher(FakePublisher):
            async def publish(self, value):
                self.calls.append(value)
                if len(self.calls) == 1:
                    raise RuntimeError("unexpected")
                return await super().publish(value)

        async def scenario():
            fetchers = {"current": ScriptedFetcher("lido-last", [0.03])}
            state = PublishedState()
            publisher = ExplodingPublisher()
            loop = SyncLoop(AprSource(fetchers), state, publisher, interval=0.01)
            task = asyncio.create_task(loop.run())
            while await state.read() != 0.03:
                await asyncio.sleep(0.005)
            loop.stop()
            await asyncio.wait_for(task, timeout=1.0)
            return loop.ticks

        assert asyncio.run(scenario()) >= 2

    def test_stop_lets_in_flight_tick_finish(self) -> None:
        async def scenario():
            gate = asyncio.Event()
            fetchers = {"current": ScriptedFetcher("lido-last", [0.04])}
            state = PublishedState(initial=0.03)
            publisher = FakePublisher(gate=gate)
            loop = SyncLoop(AprSource(fetchers), state, publisher, interval=60)

            task = asyncio.create_task(loop.run())
            await publisher.started.wait()
            loop.stop()
            gate.set()
            await asyncio.wait_for(task, timeout=1.0)
            return loop.ticks, await state.read()

        assert asyncio.run(scenario()) == (1, 0.04)
