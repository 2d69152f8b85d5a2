"""Async runners for `osascript` and helper commands used to drive the Zoom client."""
from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Optional, Sequence

from toggle_core import CommandSpec

_LOGGER = logging.getLogger("Zoomer.Plugin.OsaScript")

OSASCRIPT = "osascript"
DEFAULT_TIMEOUT = 5.0


class OsaScriptError(RuntimeError):
    """A helper command exited non-zero, timed out, or could not be launched."""

    def __init__(self, message: str, *, returncode: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def _format_command(argv: Sequence[str]) -> str:
    try:
        return shlex.join(argv)
    except Exception:
        return " ".join(argv)


async def _reap(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def run_command(argv: Sequence[str], *, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Run ``argv`` and return stripped stdout; raise OsaScriptError on any failure."""
    command = list(argv)
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise OsaScriptError(f"Executable not found: {command[0]}") from exc
    except OSError as exc:
        raise OsaScriptError(f"Failed to execute {command[0]}: {exc}") from exc
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        await _reap(proc)
        raise OsaScriptError(f"Command timed out after {timeout:.1f}s: {_format_command(command)}") from exc
    except BaseException:
        # A caller's own deadline cancels us; the child must not outlive the call.
        await asyncio.shield(_reap(proc))
        raise
    out_text = stdout.decode("utf-8", errors="replace").strip()
    err_text = stderr.decode("utf-8", errors="replace").strip()
    if proc.returncode != 0:
        raise OsaScriptError(
            f"Command failed (code {proc.returncode}): {err_text}",
            returncode=proc.returncode,
            stderr=err_text,
        )
    return out_text


async def run_applescript(script: str, *, timeout: float = DEFAULT_TIMEOUT) -> str:
    return await run_command([OSASCRIPT, "-e", script], timeout=timeout)


async def run_command_spec(command: CommandSpec) -> str:
    """Command runner handed to the Executor."""
    _LOGGER.debug("Running %s", command.description or command.name)
    return await run_applescript(command.script)
