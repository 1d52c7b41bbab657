"""
Process and pipe runtime for SSS.

Every child process gets its own stdout and stderr OS pipes. A background
pump task per stream moves decoded lines into a LineChannel; script-level
pipes (StreamPipe, ConcatPipe, ZipPipe) pull lines from channels one at a
time, so nothing is materialized ahead of its consumer beyond the channel
buffer.

Flow control: a channel holds at most `line_buffer` lines. While a consumer
is blocked on one of a process's streams, or on its exit code, all of that
process's channels accept lines without bound, so the child can always make
the progress the consumer is waiting for.
"""

import asyncio
import collections
import contextlib
import os
import shutil
import sys
from abc import ABC, abstractmethod
from typing import Any, Deque, List, Optional, Sequence, Union

from sss.sss_datatypes import ProcessLaunchError, StreamIOError

# ===================================================================
# 1. Channels and flow control
# ===================================================================


class StreamGroup:
    """The channels of one process; starving any of them unthrottles all."""
    def __init__(self, name: str = ""):
        self.name = name
        self.starving = 0


class FlowControl:
    """Backpressure state shared by every channel of a runtime.

    A single asyncio.Condition guards all channel buffers.
    """
    def __init__(self, high_water: int = 1024):
        self.high_water = high_water
        self.draining = False
        self.changed = asyncio.Condition()

    def throttled(self, group: StreamGroup, depth: int) -> bool:
        if self.draining or group.starving or self.high_water <= 0:
            return False
        return depth >= self.high_water

    @contextlib.asynccontextmanager
    async def starving(self, group: StreamGroup):
        """Lift the bound on `group` while the caller waits on it."""
        async with self.changed:
            group.starving += 1
            self.changed.notify_all()
        try:
            yield
        finally:
            group.starving -= 1

    async def drain_all(self):
        async with self.changed:
            self.draining = True
            self.changed.notify_all()


class LineChannel:
    """A buffer of decoded lines between one producer and its readers."""

    def __init__(self, flow: FlowControl, group: Optional[StreamGroup] = None, label: str = ""):
        self._flow = flow
        self._lines: Deque[str] = collections.deque()
        self.group = group or StreamGroup(label)
        self.label = label
        self.closed = False
        self.discarding = False
        self.feeding = False
        self.error: Optional[StreamIOError] = None

    def __len__(self):
        return len(self._lines)

    async def put(self, line: str):
        cond = self._flow.changed
        async with cond:
            while not self.discarding and self._flow.throttled(self.group, len(self._lines)):
                await cond.wait()
            if not self.discarding:
                self._lines.append(line)
            cond.notify_all()

    async def get(self) -> Optional[str]:
        """Next line, or None once the producer has closed and the buffer is empty."""
        cond = self._flow.changed
        async with cond:
            while not self._lines and not self.closed:
                self.group.starving += 1
                cond.notify_all()
                try:
                    await cond.wait()
                finally:
                    self.group.starving -= 1
            if self._lines:
                line = self._lines.popleft()
                cond.notify_all()
                return line
            return None

    async def close(self, error: Optional[StreamIOError] = None):
        async with self._flow.changed:
            self.closed = True
            if error is not None and self.error is None:
                self.error = error
            self._flow.changed.notify_all()

    async def discard(self):
        """Drop buffered and future lines; the producer is never throttled again."""
        async with self._flow.changed:
            self.discarding = True
            self._lines.clear()
            self._flow.changed.notify_all()


# ===================================================================
# 2. Pipes
# ===================================================================


class Pipe(ABC):
    """A lazy, single-pass, line-oriented sequence."""

    @abstractmethod
    async def readline(self) -> Optional[str]:
        """Return the next line (without its newline), or None at end-of-stream."""
        raise NotImplementedError

    @abstractmethod
    async def close(self):
        """Stop reading; producers observe a closed pipe."""
        raise NotImplementedError

    @abstractmethod
    def channels(self) -> List[LineChannel]:
        raise NotImplementedError

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        line = await self.readline()
        if line is None:
            raise StopAsyncIteration
        return line

    def __add__(self, other: 'Pipe') -> 'Pipe':
        if not isinstance(other, Pipe):
            return NotImplemented
        return ConcatPipe(self, other)


class StreamPipe(Pipe):
    """Reads one LineChannel, usually a child process's stdout or stderr."""

    def __init__(self, channel: LineChannel, on_close=None, on_error=None):
        self.channel = channel
        self._on_close = on_close
        self._on_error = on_error
        self._reported = False

    async def readline(self) -> Optional[str]:
        line = await self.channel.get()
        if line is None and self.channel.error is not None and not self._reported:
            # A failed stream ends its sequence; the failure is reported once.
            self._reported = True
            if self._on_error is not None:
                self._on_error(self.channel.error)
        return line

    async def close(self):
        if self._on_close is not None:
            await self._on_close()
        else:
            await self.channel.discard()

    def channels(self) -> List[LineChannel]:
        return [self.channel]

    def __repr__(self):
        return f"<pipe {self.channel.label}>" if self.channel.label else "<pipe>"


class ConcatPipe(Pipe):
    """All lines of `left` until its end-of-stream, then all lines of `right`."""

    def __init__(self, left: Pipe, right: Pipe):
        self._sources = [left, right]
        self._current = 0

    async def readline(self) -> Optional[str]:
        while self._current < len(self._sources):
            line = await self._sources[self._current].readline()
            if line is not None:
                return line
            self._current += 1
        return None

    async def close(self):
        for source in self._sources:
            await source.close()

    def channels(self) -> List[LineChannel]:
        return [c for s in self._sources for c in s.channels()]

    def __repr__(self):
        return f"({self._sources[0]!r} + {self._sources[1]!r})"


class ZipPipe(Pipe):
    """Alternates lines from `left` and `right`; the longer side finishes alone."""

    def __init__(self, left: Pipe, right: Pipe):
        self._sides = [left, right]
        self._all = (left, right)
        self._next = 0

    async def readline(self) -> Optional[str]:
        while self._sides:
            idx = self._next % len(self._sides)
            line = await self._sides[idx].readline()
            if line is None:
                # The other side slides into `idx` and is read next.
                del self._sides[idx]
                self._next = idx
                continue
            self._next = idx + 1
            return line
        return None

    async def close(self):
        for side in self._all:
            await side.close()

    def channels(self) -> List[LineChannel]:
        return [c for s in self._all for c in s.channels()]

    def __repr__(self):
        return f"zip({self._all[0]!r}, {self._all[1]!r})"


# ===================================================================
# 3. Processes
# ===================================================================


class ProcessHandle:
    """One child process with its output channels and optional stdin feeder."""

    def __init__(self, runtime: 'ProcessRuntime', argv: List[str], cwd: str):
        self.runtime = runtime
        self.argv = argv
        self.cwd = cwd
        self.name = os.path.basename(argv[0])
        self.process: Optional[asyncio.subprocess.Process] = None
        self.group = StreamGroup(self.name)
        self.stdout: Optional[StreamPipe] = None
        self.stderr: Optional[StreamPipe] = None
        self.feeder: Optional[asyncio.Task] = None
        self.returncode: Optional[int] = None
        self._transports = {}
        self._pumps: List[asyncio.Task] = []

    @property
    def channels(self) -> List[LineChannel]:
        return [p.channel for p in (self.stdout, self.stderr) if p is not None]

    async def start(self, stdin_source: Optional[Pipe] = None):
        out_r, out_w = os.pipe()
        err_r, err_w = os.pipe()
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=self.cwd,
                stdin=asyncio.subprocess.PIPE if stdin_source is not None else asyncio.subprocess.DEVNULL,
                stdout=out_w,
                stderr=err_w,
            )
        except OSError as e:
            os.close(out_r)
            os.close(err_r)
            raise ProcessLaunchError(f"cannot launch '{self.argv[0]}': {e.strerror or e}") from e
        finally:
            os.close(out_w)
            os.close(err_w)
        self.runtime._dbg("spawn", self.process.pid, self.argv, "cwd", self.cwd)
        self.stdout = await self._attach(out_r, "stdout")
        self.stderr = await self._attach(err_r, "stderr")
        if stdin_source is not None:
            for channel in stdin_source.channels():
                channel.feeding = True
            self.feeder = self.runtime.spawn_task(
                self._feed(stdin_source, self.process.stdin), f"feed:{self.name}")

    async def _attach(self, fd: int, stream: str) -> StreamPipe:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self.runtime.config.line_limit)
        protocol = asyncio.StreamReaderProtocol(reader)
        transport, _ = await loop.connect_read_pipe(lambda: protocol, os.fdopen(fd, "rb", 0))
        self._transports[stream] = transport
        channel = LineChannel(self.runtime.flow, self.group, f"{self.name}.{stream}")
        self._pumps.append(self.runtime.spawn_task(self._pump(reader, channel), f"pump:{channel.label}"))
        self.runtime.stats["pipes"] += 1

        async def close_stream():
            await self._close_stream(stream, channel)
        return StreamPipe(channel, on_close=close_stream, on_error=self.runtime.report)

    async def _pump(self, reader: asyncio.StreamReader, channel: LineChannel):
        encoding = self.runtime.config.encoding
        error = None
        try:
            while True:
                try:
                    raw = await reader.readline()
                except ValueError:
                    # Line longer than `line_limit`: end the sequence, keep the OS pipe drained.
                    error = StreamIOError(f"{channel.label}: line exceeds {self.runtime.config.line_limit} bytes")
                    await channel.discard()
                    while await reader.read(65536):
                        pass
                    break
                if not raw:
                    break
                if raw.endswith(b"\n"):
                    raw = raw[:-1]
                await channel.put(raw.decode(encoding, errors="replace"))
        except OSError as e:
            error = StreamIOError(f"{channel.label}: read failed: {e.strerror or e}")
        except asyncio.CancelledError:
            channel.closed = True
            raise
        await channel.close(error)

    async def _feed(self, source: Pipe, stdin: asyncio.StreamWriter):
        encoding = self.runtime.config.encoding
        try:
            async for line in source:
                if stdin.is_closing():
                    raise BrokenPipeError
                stdin.write((line + "\n").encode(encoding))
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The target stopped reading its input (e.g. `head`); upstream sees a closed pipe.
            self.runtime._dbg("feed", self.name, "closed its input")
            await source.close()
        except OSError as e:
            self.runtime.report(StreamIOError(f"{self.name}.stdin: write failed: {e.strerror or e}"))
            await source.close()
        finally:
            stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await stdin.wait_closed()

    async def _close_stream(self, stream: str, channel: LineChannel):
        await channel.discard()
        transport = self._transports.get(stream)
        if transport is not None:
            transport.close()

    async def wait(self) -> int:
        """Block until the child exits; its output keeps flowing meanwhile."""
        if self.returncode is None:
            async with self.runtime.flow.starving(self.group):
                self.returncode = await self.process.wait()
            self.runtime._dbg("exit", self.process.pid, self.returncode)
        return self.returncode

    async def terminate(self, timeout: float):
        proc = self.process
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            self.returncode = await asyncio.wait_for(proc.wait(), timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            self.returncode = await proc.wait()
        self.runtime._dbg("terminated", proc.pid, self.returncode)

    def close(self):
        for transport in self._transports.values():
            transport.close()

    def __repr__(self):
        return f"<run {' '.join(self.argv)}>"


class RunResult:
    """The record returned by `run`: {exit_code, stdout, stderr}.

    `exit_code` is resolved lazily; reading it waits for the child to exit.
    """
    FIELDS = ("exit_code", "stdout", "stderr")

    def __init__(self, handle: ProcessHandle):
        self.handle = handle
        self.stdout = handle.stdout
        self.stderr = handle.stderr

    async def exit_code(self) -> int:
        return await self.handle.wait()

    async def get_field(self, name: str):
        match name:
            case "exit_code":
                return await self.exit_code()
            case "stdout":
                return self.stdout
            case "stderr":
                return self.stderr
        raise AttributeError(name)

    def __repr__(self):
        return repr(self.handle)


# ===================================================================
# 4. Runtime
# ===================================================================


class ProcessRuntime:
    """Spawns children, owns their tasks and descriptors, writes pipes out."""

    def __init__(self, config, stdout=None):
        self.config = config
        self.stdout = stdout if stdout is not None else sys.stdout
        self.flow = FlowControl(config.line_buffer)
        self.handles: List[ProcessHandle] = []
        self.diagnostics: List[StreamIOError] = []
        self.stats = {"processes": 0, "pipes": 0}
        self._tasks: set = set()
        self._shut_down = False

    def _dbg(self, *parts):
        if self.config.debug:
            print("[DBG]", *parts, file=sys.stderr)

    def report(self, error: StreamIOError):
        self._dbg("stream error", error)
        self.diagnostics.append(error)

    def spawn_task(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Launch ---

    @staticmethod
    def parse_command(command: Union[str, Sequence[str]]) -> List[str]:
        """Split a command: strings on whitespace only (no quoting), arrays as [program, arg...]."""
        if isinstance(command, str):
            argv = command.split()
        else:
            argv = [str(a) for a in command]
        if not argv or not argv[0]:
            raise ProcessLaunchError("empty command")
        return argv

    @staticmethod
    def resolve_program(program: str, cwd: str) -> str:
        if os.sep in program:
            if os.path.isabs(program):
                return program
            return os.path.normpath(os.path.join(cwd, program))
        found = shutil.which(program)
        if found:
            return found
        local = os.path.join(cwd, program)
        if os.path.isfile(local) and os.access(local, os.X_OK):
            return local
        raise ProcessLaunchError(f"program not found: {program}")

    async def run(self, command, cwd: str, stdin: Optional[Pipe] = None) -> RunResult:
        argv = self.parse_command(command)
        if not os.path.isdir(cwd):
            raise ProcessLaunchError(f"working directory does not exist: {cwd}")
        argv[0] = self.resolve_program(argv[0], cwd)
        handle = ProcessHandle(self, argv, cwd)
        await handle.start(stdin)
        self.handles.append(handle)
        self.stats["processes"] += 1
        return RunResult(handle)

    # --- Output ---

    async def write(self, source: Union[Pipe, str], path: Optional[str] = None, cwd: Optional[str] = None) -> int:
        """Write a pipe (line by line) or a single line of text to stdout or to `path`.

        Returns the number of lines written. Failures are reported, not raised.
        """
        count = 0
        target = None
        try:
            if path is not None:
                target = open(os.path.join(cwd or os.getcwd(), path), "w",
                              encoding=self.config.encoding, newline="\n")
            out = target if target is not None else self.stdout
            if isinstance(source, Pipe):
                async for line in source:
                    out.write(line + "\n")
                    count += 1
            else:
                out.write(source + "\n")
                count = 1
            out.flush()
        except OSError as e:
            where = path if path is not None else "stdout"
            self.report(StreamIOError(f"write to {where} failed: {e.strerror or e}"))
            if isinstance(source, Pipe):
                await source.close()
        finally:
            if target is not None:
                target.close()
        return count

    # --- Lifecycle ---

    async def shutdown(self, abort: bool = False):
        """Release every child: wait for them normally, or terminate them on abort."""
        if self._shut_down:
            return
        self._shut_down = True
        try:
            if abort:
                await self._abort()
            else:
                await self._finish()
        finally:
            for handle in self.handles:
                handle.close()

    async def _finish(self):
        await self.flow.drain_all()
        # Output nobody can read any more is dropped, except what feeds another child.
        for handle in self.handles:
            for channel in handle.channels:
                if not channel.feeding:
                    await channel.discard()
        feeders = [h.feeder for h in self.handles if h.feeder is not None]
        if feeders:
            await asyncio.gather(*feeders, return_exceptions=True)
        for handle in self.handles:
            for channel in handle.channels:
                await channel.discard()
        for handle in self.handles:
            await handle.wait()
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _abort(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for handle in self.handles:
            await handle.terminate(self.config.kill_timeout)
