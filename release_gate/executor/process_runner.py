"""
Process Runner
==============
Runs one external command (a make target, rustup, the smoke probe) as a
separate process tree and returns a structured execution result.

BOUNDARY RULES:
    - Runner ONLY observes execution.
    - Runner NEVER interprets tool output; it is captured and forwarded.
    - Runner NEVER raises for a failing command: non-zero exits, timeouts and
      spawn errors all come back as an ExecutionResult.

PROCESS TREE:
    Commands run under ``bash -c`` in their own session, so a timeout kills
    the whole tree (make -> cargo -> rustc), not just the shell.

DETERMINISM:
    Same command + same workspace -> same ExecutionResult shape.
"""
import os
import signal
import subprocess
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Execution Result (returned to stages)
# ---------------------------------------------------------------------------
@dataclass
class ExecutionResult:
    """
    Structured output from a single command execution.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, non-zero = failure, -1 = never ran).
    full_log : str
        Combined stdout + stderr.
    log_excerpt : str
        Abbreviated log (first + last N lines) for summaries.
    execution_time_seconds : float
        Wall clock duration of the execution.
    timed_out : bool
        True if the process tree was killed because its timeout elapsed.
    log_path : str | None
        File the output was written to, if one was requested.
    command : str
        The command line that was executed.
    error : str | None
        Infrastructure failure (could not spawn, bad cwd), not a tool failure.
    """
    exit_code: int = -1
    full_log: str = ""
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0
    timed_out: bool = False
    log_path: Optional[str] = None
    command: str = ""
    error: Optional[str] = None
    environment_metadata: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str, head: int = _EXCERPT_HEAD_LINES, tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Keep the first ``head`` and last ``tail`` lines of a tool log.

    Compiler and test-harness output puts the command echo at the top and the
    error summary at the bottom, so the middle is what gets dropped.
    """
    lines = full_log.splitlines()
    if len(lines) <= head + tail:
        return full_log
    marker = f"\n... ({len(lines) - head - tail} lines omitted) ...\n"
    return "\n".join([*lines[:head], marker, *lines[len(lines) - tail:]])


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """SIGKILL the process group started for ``proc``."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def write_log(log_path: Optional[str], header: str, body: str) -> None:
    """Append a captured block to a stage log file."""
    if not log_path:
        return
    os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(header)
        f.write(body)
        if body and not body.endswith("\n"):
            f.write("\n")


def run_command(
    command: str,
    cwd: str,
    timeout_seconds: Optional[float] = None,
    env: Optional[dict[str, str]] = None,
    log_path: Optional[str] = None,
) -> ExecutionResult:
    """
    Execute a shell command as its own process tree.

    Lifecycle:
        1. Spawn ``bash -c <command>`` in a new session under ``cwd``
        2. Wait for exit, bounded by ``timeout_seconds``
        3. On timeout, kill the whole process group
        4. Capture combined output, append it to ``log_path``
        5. Return ExecutionResult

    Parameters
    ----------
    command : str
        Shell command line.
    cwd : str
        Working directory for the process.
    timeout_seconds : float | None
        Max execution time before the tree is killed. None = unbounded.
    env : dict | None
        Extra environment variables layered over the current environment.
    log_path : str | None
        If given, output is appended to this file with a command header.

    Returns
    -------
    ExecutionResult
        Always returned; never raises for command failures.
    """
    result = ExecutionResult(command=command, log_path=log_path)
    start_time = time.monotonic()

    proc_env = os.environ.copy()
    if env:
        proc_env.update(env)

    logger.info("Running: %s (cwd=%s, timeout=%s)", command, cwd,
                f"{timeout_seconds:.0f}s" if timeout_seconds is not None else "none")

    try:
        proc = subprocess.Popen(
            ["bash", "-c", command],
            cwd=cwd,
            env=proc_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as e:
        result.error = f"Could not start command: {type(e).__name__}: {e}"
        result.exit_code = -1
        logger.error(result.error)
        write_log(log_path, f"$ {command}\n", result.error)
        result.log_excerpt = result.error
        return result

    try:
        out, _ = proc.communicate(timeout=timeout_seconds)
        result.exit_code = proc.returncode
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        out, _ = proc.communicate()
        result.timed_out = True
        result.exit_code = proc.returncode if proc.returncode is not None else -1
        logger.error("Command timed out after %.0fs, process tree killed: %s",
                     timeout_seconds, command)

    result.full_log = (out or b"").decode("utf-8", errors="replace")
    if result.timed_out:
        result.full_log += f"\n>>> TIMED OUT after {timeout_seconds:.0f}s\n"

    result.execution_time_seconds = round(time.monotonic() - start_time, 3)
    result.log_excerpt = create_log_excerpt(result.full_log)
    result.environment_metadata = {"cwd": cwd, "timeout_applied": timeout_seconds}

    write_log(log_path, f"$ {command}\n", result.full_log)
    write_log(log_path, "", f">>> exit={result.exit_code} time={result.execution_time_seconds:.2f}s\n")

    logger.info(
        "Command complete | exit=%d | time=%.2fs | %s",
        result.exit_code, result.execution_time_seconds, command,
    )
    return result
