"""
Execution of external command-line tools.
"""

import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import structlog

from .logging import log_command


STDERR_TAIL_LINES = 20


class CommandError(RuntimeError):
    """An external tool exited with an error or timed out."""

    def __init__(
        self,
        tool: str,
        command: Sequence[str],
        message: str,
        returncode: Optional[int] = None,
        stderr: str = ""
    ):
        self.tool = tool
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        detail = f"{tool} {message}"
        if returncode is not None:
            detail += f" (exit code {returncode})"
        tail = _tail(stderr)
        if tail:
            detail += f": {tail}"
        super().__init__(detail)


class ToolNotFoundError(CommandError):
    """The executable is not on PATH."""

    def __init__(self, tool: str, command: Sequence[str]):
        super().__init__(tool, command, "executable not found on PATH")


def _tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    if not text:
        return ""
    return "\n".join(text.strip().splitlines()[-lines:])


def format_command(cmd: Sequence[str]) -> str:
    """Render a command as a shell-quoted string."""
    return " ".join(shlex.quote(str(part)) for part in cmd)


def run_command(
    cmd: Sequence[str],
    logger: structlog.BoundLogger,
    tool: Optional[str] = None,
    timeout: Optional[int] = None,
    stdout_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    **log_context
) -> subprocess.CompletedProcess:
    """
    Run an external command without a shell.

    Args:
        cmd: Command and arguments
        logger: Logger instance
        tool: Tool name used in error messages (defaults to cmd[0])
        timeout: Timeout in seconds
        stdout_path: Write standard output to this file instead of capturing it
        cwd: Working directory
        env: Environment for the child process
        **log_context: Extra fields for the command log entry

    Returns:
        The completed process

    Raises:
        ToolNotFoundError: If the executable cannot be found
        CommandError: If the command fails or times out
    """
    cmd = [str(part) for part in cmd]
    tool = tool or Path(cmd[0]).name
    log_command(logger, format_command(cmd), tool=tool, **log_context)

    try:
        if stdout_path is not None:
            stdout_path.parent.mkdir(parents=True, exist_ok=True)
            with open(stdout_path, "w") as handle:
                result = subprocess.run(
                    cmd,
                    stdout=handle,
                    stderr=subprocess.PIPE,
                    text=True,
                    check=True,
                    timeout=timeout,
                    cwd=cwd,
                    env=env,
                )
        else:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=timeout,
                cwd=cwd,
                env=env,
            )
    except FileNotFoundError:
        raise ToolNotFoundError(tool, cmd)
    except subprocess.TimeoutExpired:
        raise CommandError(tool, cmd, f"timed out after {timeout} seconds")
    except subprocess.CalledProcessError as e:
        raise CommandError(tool, cmd, "failed", returncode=e.returncode, stderr=e.stderr or "")

    logger.debug("Command finished", tool=tool, returncode=result.returncode)
    return result


def run_pipe(
    producer: Sequence[str],
    consumer: Sequence[str],
    logger: structlog.BoundLogger,
    timeout: Optional[int] = None,
    **log_context
) -> None:
    """
    Run `producer | consumer`, failing if either side fails.

    Raises:
        ToolNotFoundError: If either executable cannot be found
        CommandError: If either command fails or the pipe times out
    """
    producer = [str(part) for part in producer]
    consumer = [str(part) for part in consumer]
    log_command(
        logger,
        f"{format_command(producer)} | {format_command(consumer)}",
        **log_context
    )

    # Producer stderr goes to a file so a chatty tool cannot block on a full pipe
    with tempfile.TemporaryFile() as up_err_file:
        try:
            upstream = subprocess.Popen(
                producer, stdout=subprocess.PIPE, stderr=up_err_file
            )
        except FileNotFoundError:
            raise ToolNotFoundError(Path(producer[0]).name, producer)
        try:
            downstream = subprocess.Popen(
                consumer, stdin=upstream.stdout, stderr=subprocess.PIPE
            )
        except FileNotFoundError:
            upstream.kill()
            upstream.wait()
            raise ToolNotFoundError(Path(consumer[0]).name, consumer)
        # Let the producer receive SIGPIPE if the consumer exits early
        upstream.stdout.close()

        try:
            _, down_err = downstream.communicate(timeout=timeout)
            upstream.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            upstream.kill()
            downstream.kill()
            upstream.wait()
            downstream.wait()
            raise CommandError(Path(producer[0]).name, producer, f"timed out after {timeout} seconds")

        up_err_file.seek(0)
        up_err = up_err_file.read()

    if upstream.returncode != 0:
        raise CommandError(
            Path(producer[0]).name, producer, "failed",
            returncode=upstream.returncode,
            stderr=up_err.decode(errors="replace"),
        )
    if downstream.returncode != 0:
        raise CommandError(
            Path(consumer[0]).name, consumer, "failed",
            returncode=downstream.returncode,
            stderr=down_err.decode(errors="replace"),
        )
