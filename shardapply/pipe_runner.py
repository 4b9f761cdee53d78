# Run one archive entry through one child process.
#
# The payload goes to the child's standard input in slices no larger than
# PIPE_BUF. When output is captured, whatever the child has already written
# is drained (non-blocking) after every slice, and whenever the input pipe
# is full the runner waits on both pipes at once. The parent therefore never
# blocks writing into a full input pipe while the child blocks writing into
# a full output pipe.
#
# Example:
#   result = run_entry(b"hello", "wc", ["wc", "-c"])
#   result.exit_status, result.output   # -> 0, b"5\n"


import logging
import os
import selectors
import signal
import subprocess
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .archive import Entry
from .config import PIPE_CHUNK, PROGRESS_FORMAT

READ_CHUNK = 64 * 2**10  # 64 KB


class EntryExecutionError(OSError):
    """The child process (or its pipes) for one entry could not be created."""


# Result of one invocation.
#
# Attributes:
#   exit_status (int): Child return code, negative signal number if killed.
#   output (bytes | None): Captured standard output, None when not captured.
#   bytes_written (int): Payload bytes the child accepted before closing its input.
#
@dataclass
class PipeResult:
    exit_status: int
    output: Optional[bytes] = None
    bytes_written: int = 0

    @property
    def captured(self) -> int:
        return 0 if self.output is None else len(self.output)


# Read everything currently available on a non-blocking descriptor into
# `buffer`. Returns False once the writer side has been closed (EOF).
def _drain(fd: int, buffer: bytearray) -> bool:
    while True:
        try:
            chunk = os.read(fd, READ_CHUNK)
        except BlockingIOError:
            return True
        if not chunk:
            return False
        buffer += chunk


# Write `payload` to the child in PIPE_CHUNK slices, draining `stdout_fd`
# into `output` along the way when it is given.
#
# Returns:
#   int: Number of bytes written before the child closed its input (or all).
#
def _feed(name: str, stdin_fd: int, payload: bytes,
          stdout_fd: Optional[int] = None, output: Optional[bytearray] = None) -> int:
    view = memoryview(payload)
    written = 0
    with selectors.DefaultSelector() as selector:
        reading = stdout_fd is not None
        if reading:
            selector.register(stdout_fd, selectors.EVENT_READ)
            selector.register(stdin_fd, selectors.EVENT_WRITE)
        while written < len(view):
            # Block until the input pipe can take a slice, draining output meanwhile.
            while reading:
                ready = [key.fd for key, _ in selector.select()]
                if stdout_fd in ready:
                    if not _drain(stdout_fd, output):
                        selector.unregister(stdout_fd)
                        reading = False
                if stdin_fd in ready:
                    break
            try:
                written += os.write(stdin_fd, view[written:written + PIPE_CHUNK])
            except BrokenPipeError:
                # The child stopped reading early, a legitimate use.
                logging.debug(f"pipe_runner._feed {name!r} closed its input after {written} of {len(view)} bytes")
                break
            except OSError as exc:
                logging.error(f"pipe_runner._feed write to child failed for {name!r}: {exc}")
                break
            if reading and not _drain(stdout_fd, output):
                selector.unregister(stdout_fd)
                reading = False
    return written


def run_entry(payload: bytes, program: str, argv: Optional[List[str]] = None,
              capture: bool = True, name: str = "") -> PipeResult:
    """Run `program` with `payload` on its standard input.

    When `capture` is true the child's standard output is collected into a
    growable buffer and returned; otherwise the child inherits our standard
    output. A non-zero exit status is reported, never raised.

    Raises:
        EntryExecutionError: if the pipes or the child process cannot be created.
    """
    argv = list(argv) if argv else [program]
    try:
        proc = subprocess.Popen(
            argv,
            executable=program,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE if capture else None,
            bufsize=0,
            close_fds=True,
        )
    except OSError as exc:
        raise EntryExecutionError(
            exc.errno, f"cannot run {program!r} for entry {name!r}: {exc.strerror or exc}"
        ) from exc

    output = bytearray() if capture else None
    try:
        stdout_fd = None
        if capture:
            stdout_fd = proc.stdout.fileno()
            os.set_blocking(stdout_fd, False)
        written = _feed(name, proc.stdin.fileno(), payload, stdout_fd, output)
        proc.stdin.close()  # child sees EOF
        if capture:
            os.set_blocking(stdout_fd, True)
            while (chunk := os.read(stdout_fd, READ_CHUNK)):
                output += chunk
            proc.stdout.close()
        exit_status = proc.wait()
    except BaseException:
        proc.kill()
        proc.wait()
        raise
    return PipeResult(
        exit_status=exit_status,
        output=None if output is None else bytes(output),
        bytes_written=written,
    )


# One progress record: name, source offset, source length, exit status.
def format_progress(entry: Entry, exit_status: int) -> str:
    return PROGRESS_FORMAT.format(
        name=entry.name, offset=entry.offset, length=entry.length, status=exit_status
    )


@contextmanager
def ignore_sigpipe() -> Iterator[None]:
    """Ignore SIGPIPE for the duration of the block.

    Writing into a pipe whose reader has gone then fails with
    ``BrokenPipeError`` instead of killing the process. Signal handlers can
    only be changed from the main thread; elsewhere this does nothing.
    """
    if (not hasattr(signal, "SIGPIPE")) or (threading.current_thread() is not threading.main_thread()):
        yield
        return
    previous = signal.signal(signal.SIGPIPE, signal.SIG_IGN)
    try:
        yield
    finally:
        if previous is not None:
            signal.signal(signal.SIGPIPE, previous)
