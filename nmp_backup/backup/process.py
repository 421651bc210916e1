"""
External tool invocation with deadlines and cooperative cancellation.

Component adapters shell out to pg_dump, psql and influx. Those calls block
for the tool's full runtime, so every call runs under an OperationContext
that can kill the child when the operation deadline passes or the caller sets
the cancel event.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Dict, List, Optional

from .errors import OperationCancelled, ProcessInvocationFailed


logger = logging.getLogger(__name__)

# How often a running tool is checked for cancellation
POLL_INTERVAL = 0.5


class OperationContext:
    """
    Deadline and cancellation token for one backup or restore operation.

    Args:
        timeout: Seconds the whole operation may take (None = no deadline)
        cancel_event: Event that cancels the operation when set
    """

    def __init__(self, timeout: Optional[float] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout if timeout else None
        self.cancel_event = cancel_event or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None without a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self):
        self.cancel_event.set()

    def check(self):
        """
        Raise if the operation should stop.

        Raises:
            OperationCancelled: If cancelled or past the deadline
        """
        if self.cancelled:
            raise OperationCancelled("Operation was cancelled")
        if self.expired:
            raise OperationCancelled(f"Operation exceeded its timeout of {self.timeout}s")


def run_tool(args: List[str], env: Optional[Dict[str, str]] = None,
             context: Optional[OperationContext] = None,
             timeout: Optional[float] = None) -> str:
    """
    Run an external tool and return its combined stdout/stderr.

    Secrets must be passed through `env`, never in `args`: the argument list
    is visible in process listings and is logged.

    The tool runs in its own process group, so a kill also reaches anything
    a wrapper script started.

    Args:
        args: Command and arguments
        env: Extra environment variables layered over os.environ
        context: Deadline/cancellation for the call
        timeout: Limit for this call alone, in seconds

    Returns:
        Decoded combined output

    Raises:
        ProcessInvocationFailed: Tool missing, exited non-zero or ran past `timeout`
        OperationCancelled: Cancelled or operation deadline passed while running
    """
    tool = os.path.basename(args[0])
    context = context or OperationContext()
    context.check()

    proc_env = os.environ.copy()
    if env:
        proc_env.update(env)

    logger.debug(f"Running {' '.join(args)}")

    call_deadline = time.monotonic() + timeout if timeout is not None else None

    try:
        proc = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=proc_env,
            start_new_session=True
        )
    except OSError as e:
        raise ProcessInvocationFailed(tool, None, reason=f"could not start: {e}")

    with proc:
        while True:
            wait = POLL_INTERVAL
            remaining = context.remaining()
            if remaining is not None:
                wait = min(wait, remaining)
            if call_deadline is not None:
                wait = min(wait, max(0.0, call_deadline - time.monotonic()))

            try:
                raw_output, _ = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                if context.cancelled or context.expired:
                    _kill(proc)
                    logger.warning(f"{tool} killed before completion")
                    context.check()
                if call_deadline is not None and time.monotonic() >= call_deadline:
                    output = _kill(proc)
                    logger.warning(f"{tool} killed after {timeout:.1f}s")
                    raise ProcessInvocationFailed(tool, None, output, reason=f"timed out after {timeout:.1f}s")

    output = (raw_output or b'').decode('utf-8', errors='replace')

    if proc.returncode != 0:
        raise ProcessInvocationFailed(tool, proc.returncode, output)

    return output


def _kill(proc: subprocess.Popen) -> str:
    """Kill the tool's process group and return what it printed so far."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass

    try:
        raw_output, _ = proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        logger.error(f"Process {proc.pid} did not exit after kill")
        return ''
    return (raw_output or b'').decode('utf-8', errors='replace')
