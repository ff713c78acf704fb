from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import os
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from shadow_critic.backends.base import (
    ReviewerBackend,
    ReviewerError,
    ReviewerProcessError,
    ReviewOutcome,
    ReviewRequest,
    ReviewUsage,
)
from shadow_critic.context import content_text
from shadow_critic.verdict import parse_verdict

logger = logging.getLogger(__name__)

ReviewerEventHook = Callable[[dict[str, Any]], None]

TASK_PREFIX = "Review the following agent activity and provide feedback:\n\n"
ISOLATION_FLAGS: tuple[str, ...] = (
    "--mode",
    "json",
    "--no-session",
    "--no-extensions",
    "--no-skills",
    "--no-tools",
)
READ_CHUNK_SIZE = 64 * 1024
SYNC_POLL_SECONDS = 0.1


class JsonLineBuffer:
    """Incremental decoder for newline-delimited JSON records.

    Bytes are fed as they arrive; complete lines are split off eagerly and the
    unterminated tail is carried over to the next chunk. Each line is decoded
    independently so one malformed line never aborts the stream.
    """

    def __init__(self, on_invalid: Callable[[str], None] | None = None) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._on_invalid = on_invalid

    def feed(self, data: bytes) -> Iterator[dict[str, Any]]:
        self._pending += self._decoder.decode(data)
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return self._decode_lines(lines)

    def flush(self) -> Iterator[dict[str, Any]]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return self._decode_lines([tail])

    def _decode_lines(self, lines: Iterable[str]) -> Iterator[dict[str, Any]]:
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                if self._on_invalid is not None:
                    self._on_invalid(line)
                continue
            if isinstance(record, dict):
                yield record


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _parse_usage(raw: Any) -> ReviewUsage | None:
    if not isinstance(raw, dict):
        return None
    cost = raw.get("cost")
    total = cost.get("total") if isinstance(cost, dict) else cost
    if isinstance(total, bool) or not isinstance(total, (int, float)):
        total = 0.0
    return ReviewUsage(
        input_tokens=_as_int(raw.get("input")),
        output_tokens=_as_int(raw.get("output")),
        cost=float(total),
    )


class _TranscriptCollector:
    """Accumulates the reviewer's final assistant message from stream records."""

    def __init__(self, emit: ReviewerEventHook) -> None:
        self._emit = emit
        self.critique = ""
        self.model: str | None = None
        self.usage: ReviewUsage | None = None
        self.error: str | None = None

    def consume(self, record: dict[str, Any]) -> None:
        kind = str(record.get("type", ""))
        self._emit({"event": "critic_json_event", "type": kind})
        if kind == "message_end":
            message = record.get("message")
            if not isinstance(message, dict) or message.get("role") != "assistant":
                return
            self.critique = content_text(message.get("content"))
            usage = _parse_usage(message.get("usage"))
            if usage is not None:
                self.usage = usage
            model = message.get("model")
            if isinstance(model, str) and model:
                self.model = model
        elif kind == "error":
            detail = record.get("message")
            self.error = str(detail) if detail else "Critic reported an error"
            logger.error("Critic error event: %s", self.error)


@contextmanager
def _system_prompt_file(prompt: str) -> Iterator[Path]:
    directory = Path(tempfile.mkdtemp(prefix="shadow-critic-"))
    prompt_path = directory / "critic-prompt.md"
    try:
        descriptor = os.open(prompt_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            handle.write(prompt)
        yield prompt_path
    finally:
        with contextlib.suppress(OSError):
            prompt_path.unlink()
        with contextlib.suppress(OSError):
            directory.rmdir()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class AgentCliReviewer(ReviewerBackend):
    """Runs the reviewer as an isolated, tool-less instance of the host agent CLI."""

    def __init__(
        self,
        agent_command: list[str] | None = None,
        *,
        kill_grace_seconds: float = 3.0,
        event_hook: ReviewerEventHook | None = None,
    ) -> None:
        self.agent_command = list(agent_command or ["pi"])
        self.kill_grace_seconds = kill_grace_seconds
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, request: ReviewRequest, prompt_path: Path) -> list[str]:
        command = [*self.agent_command, *ISOLATION_FLAGS]
        model = (request.model or "").strip()
        if model:
            parts = model.split()
            if len(parts) == 2:
                command.extend(["--provider", parts[0], "--model", parts[1]])
            else:
                command.extend(["--model", model])
        command.extend(["--system-prompt", str(prompt_path)])
        command.extend(f"@{image_path}" for image_path in request.image_paths)
        command.extend(["-p", f"{TASK_PREFIX}{request.context}"])
        return command

    def _start_event(self, command: list[str], request: ReviewRequest) -> None:
        logger.info(
            "Starting critic with model=%s, timeout=%ss, context=%d chars",
            request.model or "default",
            request.timeout_seconds,
            len(request.context),
        )
        self._emit(
            {
                "event": "critic_cli_start",
                "command": command[: len(self.agent_command) + len(ISOLATION_FLAGS)],
                "model": request.model,
                "images": list(request.image_paths),
                "context_chars": len(request.context),
            }
        )

    def _parse_fallback(self, line: str) -> None:
        self._emit({"event": "critic_json_parse_fallback", "line": line[:200]})

    def _error_outcome(self, message: str, started: float) -> ReviewOutcome:
        logger.error("Critic exception: %s", message)
        return ReviewOutcome(
            critique=f"(Critic error: {message})",
            error=message,
            duration_ms=_elapsed_ms(started),
        )

    def _interrupted_outcome(
        self,
        request: ReviewRequest,
        started: float,
        *,
        aborted: bool,
    ) -> ReviewOutcome:
        if aborted:
            logger.info("Critic aborted by signal")
            self._emit({"event": "critic_aborted"})
            return ReviewOutcome(
                critique="(Critic was aborted)",
                aborted=True,
                duration_ms=_elapsed_ms(started),
            )
        logger.warning("Critic timed out after %ss", request.timeout_seconds)
        self._emit({"event": "critic_timeout", "timeout_seconds": request.timeout_seconds})
        return ReviewOutcome(
            critique="(Critic timed out)",
            error=f"Critic timed out after {request.timeout_seconds:g}s",
            timed_out=True,
            duration_ms=_elapsed_ms(started),
        )

    def _finalize(
        self,
        collector: _TranscriptCollector,
        exit_code: int,
        stderr_output: str,
        started: float,
    ) -> ReviewOutcome:
        self._emit(
            {"event": "critic_cli_exit", "exit_code": exit_code, "stderr": stderr_output[:400]}
        )
        duration_ms = _elapsed_ms(started)
        error = collector.error
        if exit_code != 0:
            logger.warning(
                "Critic exited with code %s, stderr: %s", exit_code, stderr_output[:200]
            )
            if not collector.critique and error is None:
                error = f"Critic process exited with code {exit_code}"

        if not collector.critique:
            if error is None:
                error = "Critic returned empty response"
                placeholder = "(No response from critic)"
            else:
                placeholder = f"(Critic error: {error})"
            return ReviewOutcome(
                critique=placeholder,
                model=collector.model,
                usage=collector.usage,
                error=error,
                duration_ms=duration_ms,
                exit_code=exit_code,
            )

        verdict = parse_verdict(collector.critique)
        if not verdict.marker_found:
            logger.warning(
                "Critic response missing <critic_verdict> block, defaulting to NEEDS_WORK"
            )
        logger.info(
            "Critic completed: status=%s approved=%s duration=%dms critique=%d chars",
            verdict.status,
            verdict.approved,
            duration_ms,
            len(verdict.critique),
        )
        return ReviewOutcome(
            critique=verdict.critique,
            approved=verdict.approved,
            status=verdict.status,
            model=collector.model,
            usage=collector.usage,
            error=error,
            duration_ms=duration_ms,
            exit_code=exit_code,
        )

    async def review(
        self,
        request: ReviewRequest,
        cancel: asyncio.Event | None = None,
    ) -> ReviewOutcome:
        started = time.monotonic()
        try:
            with _system_prompt_file(request.system_prompt) as prompt_path:
                command = self.build_command(request, prompt_path)
                return await self._run_async(command, request, cancel, started)
        except ReviewerError as exc:
            return self._error_outcome(str(exc), started)
        except Exception as exc:
            return self._error_outcome(str(exc) or type(exc).__name__, started)

    async def _run_async(
        self,
        command: list[str],
        request: ReviewRequest,
        cancel: asyncio.Event | None,
        started: float,
    ) -> ReviewOutcome:
        self._start_event(command, request)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(request.cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ReviewerProcessError(f"Could not launch critic process: {exc}") from exc

        collector = _TranscriptCollector(self._emit)
        stderr_chunks: list[str] = []
        pump = asyncio.ensure_future(self._pump(process, collector, stderr_chunks))
        timer = asyncio.ensure_future(asyncio.sleep(request.timeout_seconds))
        waiters: set[asyncio.Future[Any]] = {pump, timer}
        cancel_waiter: asyncio.Future[Any] | None = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if pump not in done:
                aborted = cancel_waiter is not None and cancel_waiter in done
                await self._terminate(process, graceful=not aborted)
                pump.cancel()
                await asyncio.gather(pump, return_exceptions=True)
                return self._interrupted_outcome(request, started, aborted=aborted)
            exit_code = pump.result()
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()

        return self._finalize(collector, exit_code, "".join(stderr_chunks), started)

    async def _pump(
        self,
        process: asyncio.subprocess.Process,
        collector: _TranscriptCollector,
        stderr_chunks: list[str],
    ) -> int:
        if process.stdout is None or process.stderr is None:
            raise ReviewerProcessError("Critic process did not expose stdout/stderr.")
        stdout = process.stdout
        stderr = process.stderr

        async def _read_stdout() -> None:
            buffer = JsonLineBuffer(on_invalid=self._parse_fallback)
            while chunk := await stdout.read(READ_CHUNK_SIZE):
                for record in buffer.feed(chunk):
                    collector.consume(record)
            for record in buffer.flush():
                collector.consume(record)

        async def _read_stderr() -> None:
            while chunk := await stderr.read(READ_CHUNK_SIZE):
                text = chunk.decode("utf-8", errors="replace")
                stderr_chunks.append(text)
                if text.strip():
                    self._emit({"event": "critic_stderr", "text": text[:200]})

        await asyncio.gather(_read_stdout(), _read_stderr())
        return await process.wait()

    async def _terminate(self, process: asyncio.subprocess.Process, *, graceful: bool) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            if graceful:
                process.terminate()
            else:
                process.kill()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    def review_sync(
        self,
        request: ReviewRequest,
        cancel: threading.Event | None = None,
    ) -> ReviewOutcome:
        started = time.monotonic()
        try:
            with _system_prompt_file(request.system_prompt) as prompt_path:
                command = self.build_command(request, prompt_path)
                return self._run_blocking(command, request, cancel, started)
        except ReviewerError as exc:
            return self._error_outcome(str(exc), started)
        except Exception as exc:
            return self._error_outcome(str(exc) or type(exc).__name__, started)

    def _run_blocking(
        self,
        command: list[str],
        request: ReviewRequest,
        cancel: threading.Event | None,
        started: float,
    ) -> ReviewOutcome:
        self._start_event(command, request)
        try:
            process = subprocess.Popen(
                command,
                cwd=str(request.cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise ReviewerProcessError(f"Could not launch critic process: {exc}") from exc

        deadline = time.monotonic() + request.timeout_seconds
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    self._terminate_blocking(process, graceful=False)
                    return self._interrupted_outcome(request, started, aborted=True)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._terminate_blocking(process, graceful=True)
                    return self._interrupted_outcome(request, started, aborted=False)
                wait_for = min(SYNC_POLL_SECONDS, remaining) if cancel is not None else remaining
                try:
                    stdout_data, stderr_data = process.communicate(timeout=wait_for)
                    break
                except subprocess.TimeoutExpired:
                    continue
        finally:
            if process.poll() is None:
                process.kill()
                process.communicate()

        collector = _TranscriptCollector(self._emit)
        buffer = JsonLineBuffer(on_invalid=self._parse_fallback)
        for record in buffer.feed(stdout_data or b""):
            collector.consume(record)
        for record in buffer.flush():
            collector.consume(record)
        stderr_output = (stderr_data or b"").decode("utf-8", errors="replace")
        return self._finalize(collector, process.returncode, stderr_output, started)

    def _terminate_blocking(self, process: subprocess.Popen[bytes], *, graceful: bool) -> None:
        if graceful:
            process.terminate()
        else:
            process.kill()
        try:
            process.communicate(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
