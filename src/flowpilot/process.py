from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from flowpilot.errors import ProcessLaunchError

logger = logging.getLogger(__name__)

ChunkSink = Callable[[str], None]
ProcessEventHook = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int | None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class ProcessRunner:
    """Spawns one external program per call and streams its output.

    Every invocation owns its subprocess, so concurrent calls do not share
    state. Once the program has launched, all terminations resolve to a
    ``ProcessResult``; only launch failures raise. A process that was killed
    reports ``exit_code=None``. Cancelling the awaiting task, or a chunk sink
    raising, kills and reaps the subprocess before the error propagates.
    """

    def __init__(
        self,
        *,
        event_hook: ProcessEventHook | None = None,
        chunk_size: int = 4096,
    ) -> None:
        self.event_hook = event_hook
        self.chunk_size = chunk_size

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        sink: ChunkSink | None,
        parts: list[str],
    ) -> None:
        if stream is None:
            return
        # Incremental decoding keeps multi-byte glyphs intact across reads.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(self.chunk_size)
            if not data:
                break
            text = decoder.decode(data)
            if not text:
                continue
            parts.append(text)
            if sink is not None:
                sink(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            parts.append(tail)
            if sink is not None:
                sink(tail)

    @staticmethod
    def _normalize_exit_code(return_code: int | None) -> int | None:
        if return_code is None or return_code < 0:
            return None
        return return_code

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def run(
        self,
        program: str,
        args: list[str],
        *,
        cwd: Path | str | None = None,
        on_stdout: ChunkSink | None = None,
        on_stderr: ChunkSink | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        command = [program, *args]
        self._emit({"event": "process_start", "command": command, "cwd": str(cwd) if cwd else None})
        logger.debug("Launching %s", command)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._emit({"event": "process_launch_failed", "program": program, "error": str(exc)})
            raise ProcessLaunchError(
                f"Failed to launch {program}: {exc}", program=program
            ) from exc

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        pumps = [
            asyncio.ensure_future(self._pump(process.stdout, on_stdout, stdout_parts)),
            asyncio.ensure_future(self._pump(process.stderr, on_stderr, stderr_parts)),
        ]
        try:
            await asyncio.gather(*pumps)
            return_code = await process.wait()
        except BaseException as exc:
            reason = exc.__class__.__name__
            self._emit(
                {
                    "event": "process_killed",
                    "program": program,
                    "pid": process.pid,
                    "reason": reason,
                }
            )
            logger.info("Killing %s (pid %s) after %s", program, process.pid, reason)
            await self._kill(process)
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            raise

        exit_code = self._normalize_exit_code(return_code)
        self._emit(
            {
                "event": "process_exit",
                "program": program,
                "exit_code": exit_code,
                "stdout_bytes": sum(len(part) for part in stdout_parts),
                "stderr": "".join(stderr_parts)[-400:],
            }
        )
        return ProcessResult(
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            exit_code=exit_code,
        )
