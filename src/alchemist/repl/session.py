"""REPL session — one managed interactive process and its output."""

from __future__ import annotations

import asyncio
import codecs
import enum
import logging
import os
import pty
import signal
import subprocess
import termios
from dataclasses import dataclass, field
from typing import Callable

from alchemist.errors import BrokenPipe, SpawnError
from alchemist.launch import LaunchSpec
from alchemist.repl.dispatch import SendMode, normalize
from alchemist.repl.events import EventBus
from alchemist.repl.prompt import PromptDetector
from alchemist.repl.sink import OutputSink
from alchemist.repl.text import clean_terminal_output

logger = logging.getLogger(__name__)

_READ_SIZE = 4096

# Appended after the echo of a submission whose write failed
NOT_DELIVERED_MARKER = "** (alchemist) input not delivered: {reason}\n"


class SessionStatus(enum.Enum):
    """Lifecycle states for a REPL session."""

    STARTING = "starting"
    RUNNING = "running"
    KILLING = "killing"  # Kill requested, waiting for process to die
    KILLED = "killed"  # Killed by us (SIGKILL)
    EXITED = "exited"  # Process exited on its own


@dataclass
class ReplSession:
    """A managed interactive process.

    Wraps a REPL (normally IEx) with:
    - Process group isolation (start_new_session) for safe tree-killing
    - A bounded output sink fed by an async read loop
    - Serialized, newline-normalized submissions echoed into the sink
    - Advisory prompt detection
    - Exit notification callback

    Output is read on a worker thread via ``run_in_executor`` so the
    event loop never blocks on the process. The read loop owns the read
    side of the process's output and closes it when the stream ends.
    """

    key: str
    launch: LaunchSpec
    sink: OutputSink = field(default_factory=OutputSink)
    prompt: PromptDetector = field(default_factory=PromptDetector)
    events: EventBus | None = None

    # Internal state
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _read_fd: int = field(default=-1, init=False)
    _write_fd: int = field(default=-1, init=False)
    _pgid: int = field(default=0, init=False)
    _reader_task: asyncio.Task | None = field(default=None, init=False)
    _status: SessionStatus = field(default=SessionStatus.STARTING, init=False)
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _on_exit: Callable[[ReplSession, int | None], None] | None = field(
        default=None, init=False
    )

    def set_on_exit(self, callback: Callable[[ReplSession, int | None], None]) -> None:
        """Set a callback for when the process exits on its own.

        The callback receives (session, exit_code). It is called from the
        read loop, and not when the session is killed via kill().
        """
        self._on_exit = callback

    async def start(self) -> None:
        """Spawn the process and start draining its output."""
        argv = list(self.launch.argv)
        env = {**os.environ, **self.launch.env}

        if self.launch.use_pty:
            master_fd, slave_fd = pty.openpty()
            _disable_echo(slave_fd)
            env["TERM"] = "dumb"
            stdin = stdout = stderr = slave_fd
        else:
            master_fd = slave_fd = -1
            stdin = stdout = subprocess.PIPE
            stderr = subprocess.STDOUT

        try:
            self._proc = subprocess.Popen(
                argv,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                bufsize=0,
                start_new_session=True,  # Creates new process group
                env=env,
                cwd=self.launch.cwd,
            )
        except OSError as e:
            if master_fd >= 0:
                os.close(master_fd)
            self._status = SessionStatus.EXITED
            raise SpawnError(argv, e.strerror or str(e)) from e
        finally:
            if slave_fd >= 0:
                os.close(slave_fd)

        if self.launch.use_pty:
            self._read_fd = self._write_fd = master_fd
        else:
            assert self._proc.stdout is not None and self._proc.stdin is not None
            self._read_fd = self._proc.stdout.fileno()
            self._write_fd = self._proc.stdin.fileno()

        self._pgid = os.getpgid(self._proc.pid)
        self._status = SessionStatus.RUNNING

        self.sink.attach_loop(asyncio.get_running_loop())
        self._reader_task = asyncio.create_task(self._read_loop())

        logger.info(
            "Session %s started: pid=%d cmd=%s",
            self.key,
            self._proc.pid,
            self.launch.describe(),
        )
        if self.events is not None:
            self.events.send_spawn(self.key, self._proc.pid, self.launch.describe())

    async def _read_loop(self) -> None:
        """Continuously move process output into the sink."""
        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        fd = self._read_fd
        try:
            while True:
                try:
                    data = await loop.run_in_executor(None, os.read, fd, _READ_SIZE)
                except OSError:
                    # EIO on a PTY master once the child is gone
                    break

                if not data:
                    break

                text = decoder.decode(data)
                if self.launch.use_pty:
                    text = clean_terminal_output(text)
                self._deliver(text)
            self._deliver(decoder.decode(b"", final=True))
        except Exception as e:
            logger.debug("Session %s reader ended: %s", self.key, e)
        finally:
            self._close_read_side()
            if self._status == SessionStatus.RUNNING:
                exit_code = await self._reap()
                self._mark_exited(exit_code)

    def _mark_exited(self, exit_code: int | None) -> None:
        # kill() may have run while the exit status was collected
        if self._status != SessionStatus.RUNNING:
            return
        self._status = SessionStatus.EXITED
        logger.info("Session %s exited (code=%s)", self.key, exit_code)
        if self._on_exit:
            try:
                self._on_exit(self, exit_code)
            except Exception:
                logger.exception("Error in on_exit callback for session %s", self.key)

    async def _reap(self, timeout: float = 1.0) -> int | None:
        """Collect the exit status once output has ended."""
        if self._proc is None:
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._proc.wait, timeout)
        except subprocess.TimeoutExpired:
            return None

    def _deliver(self, text: str) -> None:
        if not text:
            return
        self.sink.append(text)
        if self.events is None:
            return
        self.events.send_output(self.key, text)
        tail = self.sink.tail(256)
        if self.prompt.at_prompt(tail):
            last = tail.rstrip().rsplit("\n", 1)[-1]
            self.events.send_prompt(self.key, last)

    async def submit(self, text: str, mode: SendMode = SendMode.LINE) -> str:
        """Normalize ``text``, echo it into the sink, and write it.

        Returns the normalized text that was written. The echo and the
        write happen under the session's write lock, so the transcript
        and the process see submissions in the same order. The echo goes
        in before the write so it precedes any reply; if the write then
        fails, a marker line saying so follows it.

        The write runs on a worker thread. Output keeps draining while a
        large submission is in flight, so a process that answers as it
        reads cannot stall against a full pipe.

        Raises BrokenPipe if the process is no longer running.
        """
        data = normalize(text, mode)
        async with self._write_lock:
            self._check_running()
            self.sink.append(data)
            if self.events is not None:
                self.events.send_input(self.key, data)
            try:
                await self._write_all(data.encode("utf-8"))
            except BrokenPipe as e:
                reason = e.detail or "write failed"
                self.sink.append(NOT_DELIVERED_MARKER.format(reason=reason))
                raise
        return data

    async def write(self, data: str) -> None:
        """Write raw text to the process, with no normalization or echo."""
        async with self._write_lock:
            self._check_running()
            await self._write_all(data.encode("utf-8"))

    def _check_running(self) -> None:
        if self._status != SessionStatus.RUNNING:
            raise BrokenPipe(self.key, self._status.value)
        if self._proc is not None and self._proc.poll() is not None:
            raise BrokenPipe(self.key, f"exit code {self._proc.returncode}")

    async def _write_all(self, payload: bytes) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _write_fully, self._write_fd, payload)
        except OSError as e:
            raise BrokenPipe(self.key, e.strerror or str(e)) from e
        finally:
            # kill() leaves the write side to an in-flight write
            if self._status != SessionStatus.RUNNING:
                self._close_write_side()

    def kill(self) -> None:
        """Kill the entire process tree. Safe to call more than once."""
        if self._proc is not None and self._proc.poll() is None:
            if self._status == SessionStatus.RUNNING:
                self._status = SessionStatus.KILLING
            try:
                os.killpg(self._pgid, signal.SIGKILL)
                logger.info("Killed session %s (pgid=%d)", self.key, self._pgid)
            except ProcessLookupError:
                logger.debug("Process group already gone: %d", self._pgid)
            except OSError as e:
                logger.warning("Error killing session %s: %s", self.key, e)
        if self._status in (SessionStatus.RUNNING, SessionStatus.KILLING):
            self._status = SessionStatus.KILLED

        # Wait for process to be reaped (avoids zombies)
        if self._proc is not None:
            try:
                self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning("Session %s did not exit after SIGKILL", self.key)

        if not self._write_lock.locked():
            self._close_write_side()
        if self._reader_task is None:
            self._close_read_side()

    async def terminate(self, timeout: float = 2.0) -> None:
        """kill() and wait for the read loop to drain and finish."""
        self.kill()
        task = self._reader_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Reader for session %s did not stop", self.key)

    def _close_write_side(self) -> None:
        if self.launch.use_pty:
            # Master fd is shared with the reader, which closes it.
            return
        if self._proc is not None and self._proc.stdin is not None:
            try:
                self._proc.stdin.close()
            except OSError:
                pass
        self._write_fd = -1

    def _close_read_side(self) -> None:
        if self.launch.use_pty:
            if self._read_fd >= 0:
                try:
                    os.close(self._read_fd)
                except OSError:
                    pass
            self._write_fd = -1
        elif self._proc is not None and self._proc.stdout is not None:
            self._proc.stdout.close()
        self._read_fd = -1

    async def wait_for_exit(self, timeout: float = 10.0) -> int | None:
        """Wait for the process to exit. Returns exit code or None on timeout."""
        if self._proc is None:
            return -1
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            ret = self._proc.poll()
            if ret is not None:
                return ret
            await asyncio.sleep(0.05)
        return None

    async def wait_for_prompt(self, mark: int = 0, timeout: float = 10.0) -> bool:
        """Wait until output after ``mark`` ends at a prompt.

        Advisory: returns False on timeout or if the process exits first.
        ``mark`` is a ``sink.total_chars`` value taken earlier.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if self.prompt.at_prompt(self.sink.read_from(mark)):
                return True
            if not self.alive:
                return False
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await self.sink.wait_for_data(timeout=min(remaining, 0.5))

    async def wait_for_idle(
        self, mark: int = 0, timeout: float = 10.0, settle_time: float = 0.5
    ) -> bool:
        """Wait until output after ``mark`` rests at a prompt.

        A multi-expression submission produces one prompt per expression,
        so the first prompt is not the end of the reply. This returns
        True once the output ends at a prompt and nothing new has arrived
        for ``settle_time`` seconds; False on timeout or if the process
        exits first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            seen = self.sink.total_chars
            if self.prompt.at_prompt(self.sink.read_from(mark)):
                wait_time = min(settle_time, remaining)
                arrived = await self.sink.wait_for_data(timeout=wait_time)
                if (
                    not arrived
                    and wait_time == settle_time
                    and self.sink.total_chars == seen
                ):
                    return True
                continue
            if not self.alive:
                return False
            await self.sink.wait_for_data(timeout=min(remaining, 0.5))

    @property
    def alive(self) -> bool:
        if self._status != SessionStatus.RUNNING:
            return False
        return self._proc is not None and self._proc.poll() is None

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    def __del__(self) -> None:
        """Ensure cleanup on garbage collection."""
        if self._status in (SessionStatus.RUNNING, SessionStatus.KILLING):
            self.kill()


def _write_fully(fd: int, payload: bytes) -> None:
    view = memoryview(payload)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def _disable_echo(fd: int) -> None:
    """Turn off terminal echo; submissions are echoed into the sink instead."""
    attrs = termios.tcgetattr(fd)
    attrs[3] &= ~termios.ECHO
    termios.tcsetattr(fd, termios.TCSANOW, attrs)
