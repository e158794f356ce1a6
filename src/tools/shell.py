"""Shell command execution for Concord.

Runs subprocesses with timeout, captures stdout/stderr, and provides
structured results for the test runner.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional

from src.core.exceptions import ShellTimeoutError, ToolError

logger = logging.getLogger("concord.tools.shell")

DEFAULT_TIMEOUT = 120  # seconds
MAX_OUTPUT_BYTES = 1_048_576


@dataclass
class ShellResult:
    """Structured result from a shell command."""
    command: str
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.return_code == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


def run_command(
    command: str | list[str],
    cwd: Optional[str] = None,
    timeout: int = DEFAULT_TIMEOUT,
    env: Optional[dict[str, str]] = None,
) -> ShellResult:
    """Execute a shell command with timeout and output capture.

    Args:
        command: Command string or list of args.
        cwd: Working directory for the command.
        timeout: Max seconds before killing the process.
        env: Optional environment variables (merged with current env).

    Raises:
        ShellTimeoutError: If command exceeds timeout.
        ToolError: If command can't be started.
    """
    cmd_str = command if isinstance(command, str) else " ".join(command)
    logger.debug("Running: %s (cwd=%s, timeout=%ds)", cmd_str, cwd, timeout)

    run_env = dict(os.environ)
    if env:
        run_env.update(env)

    try:
        result = subprocess.run(
            command,
            shell=isinstance(command, str),
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=run_env,
        )
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out after %ds: %s", timeout, cmd_str)
        raise ShellTimeoutError(f"Command timed out after {timeout}s: {cmd_str}")
    except OSError as e:
        raise ToolError(f"Failed to run command: {e}") from e

    stdout = _truncate_output(result.stdout)
    stderr = _truncate_output(result.stderr)
    logger.debug(
        "Command finished: rc=%d stdout=%d chars stderr=%d chars",
        result.returncode, len(stdout), len(stderr),
    )
    return ShellResult(command=cmd_str, return_code=result.returncode, stdout=stdout, stderr=stderr)


def _truncate_output(text: str) -> str:
    if len(text.encode("utf-8")) <= MAX_OUTPUT_BYTES:
        return text

    encoded = text.encode("utf-8")[:MAX_OUTPUT_BYTES]
    truncated = encoded.decode("utf-8", errors="ignore")
    return truncated + "\n... [output truncated]"
