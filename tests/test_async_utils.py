import asyncio

import pytest

from campaign_dispatch.core.async_utils import PeriodicTicker


@pytest.mark.asyncio
async def test_ticker_runs_callback_repeatedly() -> None:
    calls = []

    async def _tick() -> None:
        calls.append(1)

    ticker = PeriodicTicker(0.01, _tick, name="test-ticker")
    ticker.start()
    await asyncio.sleep(0.1)
    await ticker.stop()

    assert len(calls) >= 3
    assert ticker.is_running is False


@pytest.mark.asyncio
async def test_ticker_survives_callback_errors(caplog: pytest.LogCaptureFixture) -> None:
    calls = []

    async def _tick() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    ticker = PeriodicTicker(0.01, _tick, name="flaky", run_immediately=True)
    ticker.start()
    await asyncio.sleep(0.05)
    await ticker.stop()

    assert len(calls) >= 2
    assert "Periodic task flaky failed" in caplog.text


@pytest.mark.asyncio
async def test_ticker_stopped_from_its_own_callback_exits() -> None:
    calls = []
    ticker: PeriodicTicker

    async def _tick() -> None:
        calls.append(1)
        await ticker.stop()

    ticker = PeriodicTicker(0.01, _tick, name="self-stop")
    ticker.start()
    await asyncio.sleep(0.1)

    assert calls == [1]
    assert ticker.is_running is False


@pytest.mark.asyncio
async def test_ticker_start_is_idempotent() -> None:
    async def _tick() -> None:
        return None

    ticker = PeriodicTicker(1.0, _tick, name="once")
    ticker.start()
    first = ticker._task
    ticker.start()

    assert ticker._task is first
    await ticker.stop()
