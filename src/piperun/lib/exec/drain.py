"""Concurrent pipe draining into caller-supplied sinks."""

from __future__ import annotations

import asyncio
import codecs
import io
from collections.abc import Callable
from dataclasses import dataclass
from typing import BinaryIO, TextIO, TypeAlias

import structlog

from piperun.lib.exec.errors import StreamCopyError

Sink: TypeAlias = BinaryIO | TextIO
LineObserver: TypeAlias = Callable[[str], None]

DEFAULT_CHUNK_SIZE = 64 * 1024
MAX_PENDING_LINE_BYTES = 64 * 1024
logger = structlog.get_logger(__name__)


class _SinkWriter:
    """Write raw chunks to a binary sink, or decoded text to a text sink."""

    def __init__(self, sink: Sink) -> None:
        self._binary: BinaryIO | None = None
        self._text: TextIO | None = None
        self._decoder: codecs.IncrementalDecoder | None = None

        if _is_text_sink(sink):
            buffer = getattr(sink, "buffer", None) if isinstance(sink, io.TextIOBase) else None
            if buffer is not None:
                # Text already queued on the wrapper must land before our bytes.
                sink.flush()
                self._binary = buffer
            else:
                self._text = sink
                self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        else:
            self._binary = sink

    def write(self, chunk: bytes) -> None:
        if self._binary is not None:
            self._binary.write(chunk)
            _flush(self._binary)
            return

        assert self._text is not None and self._decoder is not None
        text = self._decoder.decode(chunk)
        if text:
            self._text.write(text)
            _flush(self._text)

    def close(self) -> None:
        if self._text is None or self._decoder is None:
            return
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._text.write(tail)
            _flush(self._text)


def _is_text_sink(sink: Sink) -> bool:
    if isinstance(sink, io.TextIOBase):
        return True
    # Text-mode file objects outside the io hierarchy, e.g. SpooledTemporaryFile("w+").
    mode = getattr(sink, "mode", None)
    return isinstance(mode, str) and "b" not in mode


def _flush(stream: BinaryIO | TextIO) -> None:
    flush = getattr(stream, "flush", None)
    if flush is not None:
        flush()


class _LineSplitter:
    def __init__(self, observer: LineObserver, limit: int = MAX_PENDING_LINE_BYTES) -> None:
        self._observer = observer
        self._limit = limit
        self._pending = bytearray()

    def feed(self, chunk: bytes) -> None:
        self._pending.extend(chunk)
        while True:
            index = self._pending.find(b"\n")
            if index < 0:
                break
            line = bytes(self._pending[:index])
            del self._pending[: index + 1]
            self._emit(line)

        while len(self._pending) >= self._limit:
            piece = bytes(self._pending[: self._limit])
            del self._pending[: self._limit]
            self._emit(piece)

    def close(self) -> None:
        if self._pending:
            line = bytes(self._pending)
            self._pending.clear()
            self._emit(line)

    def _emit(self, raw_line: bytes) -> None:
        line = raw_line.decode("utf-8", errors="replace").removesuffix("\r")
        try:
            self._observer(line)
        except Exception:
            logger.warning("Output line observer failed.", exc_info=True)


async def copy_stream(
    reader: asyncio.StreamReader,
    sink: Sink,
    *,
    stream: str = "stdout",
    line_observer: LineObserver | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """Copy ``reader`` into ``sink`` until EOF and return the bytes written.

    A failing sink does not stop the drain: the rest of the stream is read and
    discarded so the child never blocks on a full pipe, and the sink error is
    raised once EOF is reached.
    """

    splitter = _LineSplitter(line_observer) if line_observer is not None else None
    copied = 0
    write_error: Exception | None = None
    writer: _SinkWriter | None = None
    try:
        writer = _SinkWriter(sink)
    except Exception as exc:
        write_error = exc

    while True:
        try:
            chunk = await reader.read(chunk_size)
        except OSError as exc:
            raise StreamCopyError(stream, exc, copied=copied) from exc
        if not chunk:
            break

        if splitter is not None:
            splitter.feed(chunk)
        if writer is None:
            continue

        try:
            writer.write(chunk)
        except Exception as exc:
            write_error = exc
            writer = None
            logger.warning("Output sink rejected write; discarding rest.", stream=stream)
            continue
        copied += len(chunk)

    if splitter is not None:
        splitter.close()
    if write_error is not None:
        raise StreamCopyError(stream, write_error, copied=copied) from write_error
    assert writer is not None

    try:
        writer.close()
    except Exception as exc:
        raise StreamCopyError(stream, exc, copied=copied) from exc
    return copied


@dataclass(frozen=True, slots=True)
class CopyJob:
    """One pipe-to-sink copy handled by the pump."""

    reader: asyncio.StreamReader
    sink: Sink
    stream: str
    line_observer: LineObserver | None = None


@dataclass(frozen=True, slots=True)
class CopyOutcome:
    """Byte counts and independently captured errors of both drains."""

    stdout_bytes: int = 0
    stderr_bytes: int = 0
    stdout_error: StreamCopyError | None = None
    stderr_error: StreamCopyError | None = None

    @property
    def ok(self) -> bool:
        return self.stdout_error is None and self.stderr_error is None


async def _drain(job: CopyJob) -> tuple[int, StreamCopyError | None]:
    try:
        copied = await copy_stream(
            job.reader,
            job.sink,
            stream=job.stream,
            line_observer=job.line_observer,
        )
    except StreamCopyError as exc:
        return exc.copied, exc
    except Exception as exc:
        # A reader failure other than OSError still ends this drain only.
        error = StreamCopyError(job.stream, exc)
        error.__cause__ = exc
        return 0, error
    return copied, None


class DrainPump:
    """Two parallel copies joined by a single barrier."""

    def __init__(self, stdout: CopyJob, stderr: CopyJob) -> None:
        self._jobs = (stdout, stderr)
        self._tasks: tuple[asyncio.Task[tuple[int, StreamCopyError | None]], ...] = ()

    @property
    def done(self) -> bool:
        return bool(self._tasks) and all(task.done() for task in self._tasks)

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError("Drain pump already started.")
        self._tasks = tuple(asyncio.create_task(_drain(job)) for job in self._jobs)

    async def wait(self) -> CopyOutcome:
        """Block until both drains reached end-of-stream."""

        if not self._tasks:
            raise RuntimeError("Drain pump was never started.")
        # asyncio.wait leaves the drains running if this waiter is cancelled.
        await asyncio.wait(self._tasks)
        stdout_task, stderr_task = self._tasks
        stdout_bytes, stdout_error = stdout_task.result()
        stderr_bytes, stderr_error = stderr_task.result()
        return CopyOutcome(
            stdout_bytes=stdout_bytes,
            stderr_bytes=stderr_bytes,
            stdout_error=stdout_error,
            stderr_error=stderr_error,
        )


async def copy_in_parallel(stdout: CopyJob, stderr: CopyJob) -> CopyOutcome:
    """Run both copies concurrently and return once both finished."""

    pump = DrainPump(stdout, stderr)
    pump.start()
    return await pump.wait()
