import pytest

from draftsmith.streaming import SimulatedStream, pacing_for


def test_pacing_speeds_up_for_long_text():
    assert pacing_for("x" * 100) == (40, 0.016)
    assert pacing_for("x" * 3001) == (80, 0.010)


@pytest.mark.asyncio
async def test_stream_yields_growing_prefixes():
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    stream = SimulatedStream("abcdefg", chunk_chars=3, interval=0.5, sleep=fake_sleep)
    prefixes = [prefix async for prefix in stream]

    assert prefixes == ["abc", "abcdef", "abcdefg"]
    assert sleeps == [0.5, 0.5, 0.5]


@pytest.mark.asyncio
async def test_render_emits_deltas_that_rebuild_the_text():
    async def no_sleep(seconds: float) -> None:
        return None

    emitted: list[str] = []
    stream = SimulatedStream("The tide rose over the pier.", chunk_chars=5, sleep=no_sleep)

    finished = await stream.render(emitted.append)

    assert finished is True
    assert "".join(emitted) == "The tide rose over the pier."
    assert emitted[0] == "The t"


@pytest.mark.asyncio
async def test_stop_flushes_remaining_text_at_once():
    emitted: list[str] = []
    stream: SimulatedStream

    async def stop_after_first(seconds: float) -> None:
        stream.stop()

    stream = SimulatedStream("0123456789", chunk_chars=2, sleep=stop_after_first)
    finished = await stream.render(emitted.append)

    assert finished is False
    assert stream.stopped
    assert emitted == ["01", "23456789"]


@pytest.mark.asyncio
async def test_empty_text_emits_nothing():
    emitted: list[str] = []

    async def no_sleep(seconds: float) -> None:
        return None

    assert await SimulatedStream("", sleep=no_sleep).render(emitted.append) is True
    assert emitted == []
