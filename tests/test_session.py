"""Tests for alchemist.repl.session.ReplSession against a fake REPL."""

from __future__ import annotations

import asyncio
import errno

import pytest

from alchemist.errors import BrokenPipe, SpawnError
from alchemist.launch import LaunchSpec, LaunchVariant
from alchemist.repl.dispatch import SendMode
from alchemist.repl.events import EventBus, EventType
from alchemist.repl import session as session_module
from alchemist.repl.session import NOT_DELIVERED_MARKER, ReplSession, SessionStatus
from alchemist.repl.sink import OutputSink

from conftest import SLOW_IEX, fake_launch, started_session, wait_until


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_reaches_prompt(self) -> None:
        async with started_session() as session:
            assert session.alive
            assert session.status == SessionStatus.RUNNING
            assert session.pid is not None
            assert await session.wait_for_prompt(timeout=5.0)
            assert "iex(1)> " in session.sink.read_all()

    @pytest.mark.asyncio
    async def test_spawn_error(self) -> None:
        launch = LaunchSpec(
            variant=LaunchVariant.PLAIN, argv=("/nonexistent/bin/iex",)
        )
        session = ReplSession(key="bad", launch=launch)
        with pytest.raises(SpawnError) as exc_info:
            await session.start()
        assert exc_info.value.command == ["/nonexistent/bin/iex"]
        assert not session.alive
        assert session.pid is None

    @pytest.mark.asyncio
    async def test_kill_is_idempotent(self) -> None:
        async with started_session() as session:
            session.kill()
            session.kill()
            assert session.status == SessionStatus.KILLED
            assert not session.alive
            await session.terminate()
            assert session.status == SessionStatus.KILLED

    @pytest.mark.asyncio
    async def test_exit_on_its_own(self) -> None:
        async with started_session() as session:
            await session.wait_for_prompt(timeout=5.0)
            await session.submit("exit")
            assert await session.wait_for_exit(timeout=5.0) == 3
            assert await wait_until(lambda: session.status == SessionStatus.EXITED)
            assert not session.alive
            assert session.returncode == 3

    @pytest.mark.asyncio
    async def test_on_exit_callback(self) -> None:
        seen: list[int | None] = []
        async with started_session() as session:
            session.set_on_exit(lambda s, code: seen.append(code))
            await session.wait_for_prompt(timeout=5.0)
            await session.submit("exit")
            assert await wait_until(lambda: bool(seen))
        assert seen == [3]

    @pytest.mark.asyncio
    async def test_on_exit_not_called_when_killed(self) -> None:
        seen: list[int | None] = []
        async with started_session() as session:
            session.set_on_exit(lambda s, code: seen.append(code))
            await session.terminate()
        assert seen == []


# ---------------------------------------------------------------------------
# Submitting input
# ---------------------------------------------------------------------------


class TestSubmit:
    @pytest.mark.asyncio
    async def test_line_mode_collapses_and_echoes(self) -> None:
        async with started_session() as session:
            await session.wait_for_prompt(timeout=5.0)
            mark = session.sink.total_chars
            written = await session.submit("a\nb\nc", SendMode.LINE)
            assert written == "a b c\n"
            # Echo lands in the sink before the process answers
            assert session.sink.read_from(mark).startswith("a b c\n")
            assert await session.wait_for_prompt(mark=mark, timeout=5.0)
            assert "=> a b c\n" in session.sink.read_from(mark)

    @pytest.mark.asyncio
    async def test_verbatim_mode_sends_each_line(self) -> None:
        async with started_session() as session:
            await session.wait_for_prompt(timeout=5.0)
            mark = session.sink.total_chars
            written = await session.submit("x = 1\ny = 2", SendMode.VERBATIM)
            assert written == "x = 1\ny = 2\n"
            assert await wait_until(
                lambda: "=> y = 2" in session.sink.read_from(mark)
            )
            out = session.sink.read_from(mark)
            assert out.index("=> x = 1") < out.index("=> y = 2")

    @pytest.mark.asyncio
    async def test_submissions_keep_order(self) -> None:
        async with started_session() as session:
            for i in range(10):
                await session.submit(f"msg {i}")
            assert await wait_until(lambda: "=> msg 9" in session.sink.read_all())
            out = session.sink.read_all()
            positions = [out.index(f"=> msg {i}\n") for i in range(10)]
            assert positions == sorted(positions)

    @pytest.mark.asyncio
    async def test_submit_after_exit_raises_broken_pipe(self) -> None:
        async with started_session() as session:
            await session.wait_for_prompt(timeout=5.0)
            await session.submit("exit")
            await session.wait_for_exit(timeout=5.0)
            with pytest.raises(BrokenPipe) as exc_info:
                await session.submit("1 + 1")
            assert exc_info.value.key == "test"

    @pytest.mark.asyncio
    async def test_submit_after_kill_raises_broken_pipe(self) -> None:
        async with started_session() as session:
            session.kill()
            with pytest.raises(BrokenPipe):
                await session.submit("1 + 1")

    @pytest.mark.asyncio
    async def test_raw_write_has_no_echo(self) -> None:
        async with started_session() as session:
            await session.wait_for_prompt(timeout=5.0)
            mark = session.sink.total_chars
            await session.write("raw\n")
            assert await session.wait_for_prompt(mark=mark, timeout=5.0)
            assert session.sink.read_from(mark).startswith("=> raw\n")

    @pytest.mark.asyncio
    async def test_large_verbatim_submission_does_not_stall(self) -> None:
        # Far more than a pipe buffer each way, answered while still being written
        lines = [f"line {i:05d} " + "x" * 52 for i in range(6000)]
        async with started_session(sink=OutputSink(2_000_000)) as session:
            await session.wait_for_prompt(timeout=5.0)
            mark = session.sink.total_chars
            written = await asyncio.wait_for(
                session.submit("\n".join(lines), SendMode.VERBATIM), timeout=20.0
            )
            assert written == "\n".join(lines) + "\n"
            assert await wait_until(
                lambda: f"=> {lines[-1]}\n" in session.sink.tail(200), timeout=20.0
            )
            out = session.sink.read_from(mark)
            assert out.startswith(written)
            assert out.count("=> line ") == len(lines)
            assert out.index("=> line 00000 ") < out.index("=> line 05999 ")

    @pytest.mark.asyncio
    async def test_failed_write_is_marked_in_transcript(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken_write(fd: int, payload: bytes) -> None:
            raise BrokenPipeError(errno.EPIPE, "Broken pipe")

        async with started_session() as session:
            await session.wait_for_prompt(timeout=5.0)
            mark = session.sink.total_chars
            monkeypatch.setattr(session_module, "_write_fully", broken_write)
            with pytest.raises(BrokenPipe):
                await session.submit("1 + 1")
            assert session.sink.read_from(mark) == (
                "1 + 1\n"
                + NOT_DELIVERED_MARKER.format(reason="Broken pipe")
            )


# ---------------------------------------------------------------------------
# Prompt waiting
# ---------------------------------------------------------------------------


class TestWaitForPrompt:
    @pytest.mark.asyncio
    async def test_times_out_without_prompt(self) -> None:
        launch = LaunchSpec(
            variant=LaunchVariant.PLAIN,
            argv=("sh", "-c", "echo busy; sleep 30"),
        )
        async with started_session(launch) as session:
            assert await session.wait_for_prompt(timeout=0.3) is False

    @pytest.mark.asyncio
    async def test_returns_false_when_process_exits(self) -> None:
        launch = LaunchSpec(variant=LaunchVariant.PLAIN, argv=("sh", "-c", "echo bye"))
        async with started_session(launch) as session:
            assert await session.wait_for_prompt(timeout=5.0) is False
            assert await wait_until(lambda: "bye" in session.sink.read_all())


class TestWaitForIdle:
    @pytest.mark.asyncio
    async def test_waits_past_the_first_prompt(self) -> None:
        async with started_session(fake_launch(script=SLOW_IEX)) as session:
            assert await session.wait_for_prompt(timeout=5.0)
            mark = session.sink.total_chars
            await session.submit("a\nb\nc", SendMode.VERBATIM)
            assert await session.wait_for_idle(mark=mark, timeout=10.0)
            out = session.sink.read_from(mark)
            assert "=> a\n" in out
            assert "=> b\n" in out
            assert "=> c\n" in out
            assert out.rstrip().endswith("iex(4)>")

    @pytest.mark.asyncio
    async def test_times_out_without_prompt(self) -> None:
        launch = LaunchSpec(
            variant=LaunchVariant.PLAIN,
            argv=("sh", "-c", "echo busy; sleep 30"),
        )
        async with started_session(launch) as session:
            assert await session.wait_for_idle(timeout=0.5) is False

    @pytest.mark.asyncio
    async def test_returns_false_when_process_exits(self) -> None:
        launch = LaunchSpec(variant=LaunchVariant.PLAIN, argv=("sh", "-c", "echo bye"))
        async with started_session(launch) as session:
            assert await session.wait_for_idle(timeout=5.0) is False


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_event_sequence(self) -> None:
        bus = EventBus()
        q = bus.subscribe()
        async with started_session(events=bus) as session:
            await session.wait_for_prompt(timeout=5.0)
            mark = session.sink.total_chars
            await session.submit("hello")
            await session.wait_for_prompt(mark=mark, timeout=5.0)

        events = []
        while not q.empty():
            events.append(q.get_nowait())
        types = [e.type for e in events if e is not None]
        assert types[0] == EventType.SPAWN
        assert EventType.PROMPT in types
        input_at = types.index(EventType.INPUT)
        assert events[input_at].data["text"] == "hello\n"  # type: ignore[union-attr]
        answers = [
            i
            for i, e in enumerate(events)
            if e is not None
            and e.type == EventType.OUTPUT
            and "=> hello" in e.data["text"]
        ]
        assert answers and answers[0] > input_at


# ---------------------------------------------------------------------------
# PTY mode
# ---------------------------------------------------------------------------


class TestPtyMode:
    @pytest.mark.asyncio
    async def test_round_trip_under_pty(self) -> None:
        async with started_session(fake_launch(use_pty=True)) as session:
            assert await session.wait_for_prompt(timeout=5.0)
            mark = session.sink.total_chars
            await session.submit("ping")
            assert await wait_until(lambda: "=> ping" in session.sink.read_from(mark))
            assert "\x1b" not in session.sink.read_all()

    @pytest.mark.asyncio
    async def test_kill_under_pty(self) -> None:
        async with started_session(fake_launch(use_pty=True)) as session:
            await session.terminate()
            assert not session.alive
            with pytest.raises(BrokenPipe):
                await session.submit("ping")
