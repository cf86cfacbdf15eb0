"""Guarded filesystem and command operations performed by the executor."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any

from filebridge.errors import (
    CommandTimeoutError,
    NotFoundError,
    OperationFaultError,
)
from filebridge.executor.access_guard import AccessGuard
from filebridge.executor.config import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    MAX_COMMAND_TIMEOUT_MS,
    ExecutorConfig,
)

logger = logging.getLogger("filebridge.executor.operations")

READER_GRACE_SECONDS = 2.0


def _read_text(path: Path, encoding: str) -> str:
    with open(path, "r", encoding=encoding, newline="") as handle:
        return handle.read()


def _write_text(path: Path, content: str, encoding: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding=encoding, newline="") as handle:
        handle.write(content)


def _process_group_kwargs() -> dict[str, Any]:
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}  # type: ignore[attr-defined]
    return {"start_new_session": True}


def _kill_process_tree(process: asyncio.subprocess.Process) -> None:
    """Kill the shell and everything it spawned."""
    if process.returncode is not None:
        return
    try:
        if sys.platform == "win32":
            process.kill()
        else:
            os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def _drain(stream: asyncio.StreamReader | None, sink: bytearray) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        sink.extend(chunk)


class OperationExecutor:
    """Performs one concrete operation, consulting the access guard on every path."""

    def __init__(
        self,
        guard: AccessGuard,
        *,
        working_dir: str | Path | None = None,
        default_command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        max_command_timeout_ms: int = MAX_COMMAND_TIMEOUT_MS,
    ) -> None:
        self.guard = guard
        self.working_dir = Path(working_dir) if working_dir is not None else None
        self.default_command_timeout_ms = default_command_timeout_ms
        self.max_command_timeout_ms = max_command_timeout_ms

    @classmethod
    def from_config(cls, config: ExecutorConfig) -> "OperationExecutor":
        return cls(
            AccessGuard(config.allowed_paths),
            working_dir=config.working_dir,
            default_command_timeout_ms=config.default_command_timeout_ms,
            max_command_timeout_ms=config.max_command_timeout_ms,
        )

    def default_cwd(self) -> Path:
        """Configured working dir, else first allowed prefix, else process cwd."""
        if self.working_dir is not None:
            return self.working_dir
        if self.guard.allowed_paths:
            return self.guard.allowed_paths[0]
        return Path.cwd()

    def effective_timeout_ms(self, requested_ms: float | None) -> float:
        if requested_ms is None:
            return float(self.default_command_timeout_ms)
        return float(min(requested_ms, self.max_command_timeout_ms))

    async def read_file(self, path: str, encoding: str = "utf-8") -> dict[str, Any]:
        target = self.guard.check(path)
        logger.info("Reading file %s", target)
        content = await self._load(target, path, encoding)
        return {"path": str(target), "content": content, "size": len(content)}

    async def write_file(self, path: str, content: str, encoding: str = "utf-8") -> dict[str, Any]:
        target = self.guard.check(path)
        logger.info("Writing file %s (%d chars)", target, len(content))
        try:
            await asyncio.to_thread(_write_text, target, content, encoding)
        except (OSError, LookupError, UnicodeEncodeError) as exc:
            raise OperationFaultError(f"Failed to write {path}: {exc}") from exc
        return {"path": str(target), "size": len(content)}

    async def edit_file(
        self,
        path: str,
        old_string: str,
        new_string: str,
        *,
        replace_all: bool = False,
    ) -> dict[str, Any]:
        target = self.guard.check(path)
        content = await self._load(target, path, "utf-8")
        occurrences = content.count(old_string)
        if occurrences == 0:
            raise NotFoundError(f"Old string not found in file: {path}")
        if replace_all:
            updated = content.replace(old_string, new_string)
            replacements = occurrences
        else:
            updated = content.replace(old_string, new_string, 1)
            replacements = 1
        logger.info("Editing file %s (%d replacements)", target, replacements)
        try:
            await asyncio.to_thread(_write_text, target, updated, "utf-8")
        except OSError as exc:
            raise OperationFaultError(f"Failed to write {path}: {exc}") from exc
        return {"path": str(target), "replacements": replacements}

    async def list_files(self, directory: str | None = None, pattern: str = "*") -> dict[str, Any]:
        base = self.guard.check(directory if directory else self.default_cwd())
        if not base.exists():
            raise NotFoundError(f"Directory not found: {directory or base}")
        if not base.is_dir():
            raise OperationFaultError(f"Not a directory: {directory or base}")
        logger.info("Listing %s with pattern %s", base, pattern)
        try:
            files = await asyncio.to_thread(self._glob, base, pattern)
        except (OSError, ValueError) as exc:
            raise OperationFaultError(f"Failed to list {base}: {exc}") from exc
        return {"directory": str(base), "files": files, "count": len(files)}

    async def run_command(
        self,
        command: str,
        cwd: str | None = None,
        timeout_ms: float | None = None,
    ) -> dict[str, Any]:
        work_dir = self.guard.check(cwd if cwd else self.default_cwd())
        if not work_dir.is_dir():
            raise NotFoundError(f"Working directory not found: {cwd or work_dir}")
        effective_ms = self.effective_timeout_ms(timeout_ms)
        logger.info("Running command in %s (timeout %.0f ms)", work_dir, effective_ms)

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(work_dir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **_process_group_kwargs(),
        )
        stdout_buf = bytearray()
        stderr_buf = bytearray()
        readers = [
            asyncio.create_task(_drain(process.stdout, stdout_buf)),
            asyncio.create_task(_drain(process.stderr, stderr_buf)),
        ]
        timed_out = False
        try:
            await asyncio.wait_for(process.wait(), timeout=effective_ms / 1000.0)
        except asyncio.TimeoutError:
            timed_out = True
            _kill_process_tree(process)
            await process.wait()
        except asyncio.CancelledError:
            _kill_process_tree(process)
            for reader in readers:
                reader.cancel()
            raise

        # Background children may keep the pipes open after the shell exits.
        try:
            _, still_reading = await asyncio.wait(readers, timeout=READER_GRACE_SECONDS)
        except asyncio.CancelledError:
            for reader in readers:
                reader.cancel()
            raise
        for reader in still_reading:
            reader.cancel()
        if still_reading:
            await asyncio.gather(*still_reading, return_exceptions=True)

        stdout = stdout_buf.decode("utf-8", errors="replace")
        stderr = stderr_buf.decode("utf-8", errors="replace")
        if timed_out:
            logger.warning("Command timed out after %.0f ms", effective_ms)
            raise CommandTimeoutError(
                f"Command timed out after {effective_ms:.0f} ms",
                data={
                    "command": command,
                    "stdout": stdout,
                    "stderr": stderr,
                    "exitCode": None,
                    "timedOut": True,
                },
            )
        return {
            "command": command,
            "stdout": stdout,
            "stderr": stderr,
            "exitCode": process.returncode,
        }

    async def _load(self, target: Path, requested: str, encoding: str) -> str:
        try:
            return await asyncio.to_thread(_read_text, target, encoding)
        except FileNotFoundError as exc:
            raise NotFoundError(f"File not found: {requested}") from exc
        except IsADirectoryError as exc:
            raise OperationFaultError(f"Path is a directory: {requested}") from exc
        except (OSError, LookupError, UnicodeDecodeError) as exc:
            raise OperationFaultError(f"Failed to read {requested}: {exc}") from exc

    def _glob(self, base: Path, pattern: str) -> list[str]:
        matches: list[str] = []
        for match in base.glob(pattern):
            if not self.guard.unrestricted and not self.guard.is_allowed(match):
                continue
            matches.append(match.relative_to(base).as_posix())
        return sorted(matches)
