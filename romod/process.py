"""Child process helpers shared by the engine clients."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .errors import EngineProcessError, ServerStartupTimeoutError

logger = logging.getLogger(__name__)

# Grace period after SIGKILL before giving up on reaping the child
KILL_WAIT_TIMEOUT = 3.0


@dataclass
class ProcessResult:
    """Captured outcome of a one-shot process invocation."""

    returncode: Optional[int]
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


async def run_process(binary: str, args: Sequence[str]) -> ProcessResult:
    """Run a process to completion and capture its output streams.

    Args:
        binary: Executable path or command name.
        args: Command-line arguments.

    Returns:
        ProcessResult with the exit code and decoded streams.

    Raises:
        EngineProcessError: If the process could not be spawned.
    """
    logger.debug(f"Running: {binary} {' '.join(args)}")

    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise EngineProcessError(f"Failed to spawn {binary}: {e}") from e

    stdout, stderr = await process.communicate()
    logger.debug(f"{binary} exited with code {process.returncode}")

    return ProcessResult(
        returncode=process.returncode,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
    )


async def probe_command(command: str, timeout: float = 5.0) -> Tuple[bool, Optional[str]]:
    """Check whether a bare command name appears runnable.

    The command is invoked with --help and accepted if it prints anything
    or exits cleanly before the timeout. This only proves presence; it is
    not a version or compatibility check.

    Returns:
        Tuple of (found, error_message)
    """
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            "--help",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return False, f"Command not found: {command}"
    except PermissionError:
        return False, f"Permission denied executing: {command}"
    except OSError as e:
        return False, f"Error executing {command}: {e}"

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass  # Process already finished
        return False, f"Command {command} test timed out after {timeout}s"

    if stdout or stderr or process.returncode == 0:
        return True, None

    return False, f"Command {command} failed with code {process.returncode}"


async def terminate_process(
    process: Optional[asyncio.subprocess.Process], timeout: float = 5.0
) -> Optional[int]:
    """Terminate a child process, escalating to SIGKILL if needed.

    Args:
        process: The process to stop. None and already-exited processes
            are a no-op.
        timeout: Time to wait for a graceful exit after SIGTERM.

    Returns:
        The exit code, if one was observed.
    """
    if process is None:
        return None

    if process.returncode is not None:
        return process.returncode

    pid = process.pid
    logger.info(f"Sending SIGTERM to PID {pid}")
    try:
        process.terminate()
    except ProcessLookupError:
        return process.returncode

    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
        logger.info(f"Process {pid} exited gracefully")
    except asyncio.TimeoutError:
        logger.warning(f"Process {pid} didn't exit within {timeout}s, sending SIGKILL")
        try:
            process.kill()
            await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_TIMEOUT)
        except (ProcessLookupError, asyncio.TimeoutError):
            pass

    return process.returncode


async def wait_for_port(
    host: str,
    port: int,
    attempts: int = 60,
    connect_timeout: float = 2.0,
    interval: float = 1.0,
    process: Optional[asyncio.subprocess.Process] = None,
) -> int:
    """Wait until a TCP port accepts connections.

    Args:
        host: Host to connect to.
        port: Port to connect to.
        attempts: Maximum number of connection attempts.
        connect_timeout: Timeout for each attempt.
        interval: Delay between attempts.
        process: Optional server process; its early exit aborts the wait.

    Returns:
        The attempt number that succeeded.

    Raises:
        ServerStartupTimeoutError: If the port never accepted a connection
            or the server process exited first.
    """
    for attempt in range(1, attempts + 1):
        if process is not None and process.returncode is not None:
            raise ServerStartupTimeoutError(
                f"Server process exited with code {process.returncode} "
                f"before accepting connections on {host}:{port}"
            )

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=connect_timeout
            )
        except (OSError, asyncio.TimeoutError):
            logger.debug(f"Waiting for server on {host}:{port}... ({attempt}/{attempts})")
            if attempt < attempts:
                await asyncio.sleep(interval)
            continue

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        logger.info(f"Server is ready on {host}:{port}")
        return attempt

    raise ServerStartupTimeoutError(
        f"Server failed to start on {host}:{port} within {attempts} attempts"
    )
