"""OpenClaw CLI adapter for the agent transport."""

import asyncio
import contextlib
import json
import logging
import os
import signal
from typing import Any

from controlgate.config import settings
from controlgate.engine.errors import TransportError, TransportTimeout
from controlgate.transport.base import NON_JSON_OUTPUT, TransportResult, error_from_text
from controlgate.utils.text import compact, truncate

logger = logging.getLogger(__name__)


def _parse_json_text(text: str) -> Any:
    """First line that parses as a JSON object/array, else the whole text."""
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith(("{", "[")):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError:
                continue
    return json.loads(text)


def parse_cli_output(stdout: str, stderr: str) -> dict[str, Any]:
    """Parse ``--json`` output, tolerating log noise around the JSON.

    Tries stdout, then stderr, then both. Output with no JSON at all is
    reported as an error result carrying the raw text.
    """
    for source in (stdout, stderr, f"{stdout}\n{stderr}"):
        if not source.strip():
            continue
        try:
            parsed = _parse_json_text(source)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
        return {"payloads": parsed if isinstance(parsed, list) else [parsed]}

    fallback = stdout.strip() or stderr.strip()
    if fallback:
        return {
            "status": "error",
            "summary": NON_JSON_OUTPUT,
            "result": {"payloads": [{"text": fallback}]},
        }
    raise TransportError(
        f'Failed to parse agent runtime output; stdout="{truncate(compact(stdout), 220)}" '
        f'stderr="{truncate(compact(stderr), 220)}"'
    )


def result_from_output(data: dict[str, Any]) -> TransportResult:
    nested = data.get("result") if isinstance(data.get("result"), dict) else {}
    payloads = nested.get("payloads") or data.get("payloads") or []
    texts = []
    for payload in payloads:
        text = payload.get("text") if isinstance(payload, dict) else payload
        if isinstance(text, str) and text.strip():
            texts.append(text.strip())
    return TransportResult(
        run_id=data.get("runId") or data.get("run_id"),
        status=data.get("status"),
        summary=data.get("summary"),
        response_text="\n\n".join(texts),
    )


def _summarize_args(args: list[str]) -> str:
    parts = []
    for arg in args:
        if arg.startswith("You are "):
            parts.append(arg[:60] + "...")
        elif len(arg) > 120:
            parts.append(arg[:117] + "...")
        else:
            parts.append(arg)
    return truncate(compact(" ".join(parts)), 300)


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, AttributeError):
        with contextlib.suppress(ProcessLookupError):
            proc.kill()


class OpenClawTransport:
    """Runs agent turns through the ``openclaw`` CLI.

    Each call is a child process in its own session; on timeout the whole
    process group is killed.
    """

    def __init__(self, binary: str | None = None, timeout_seconds: float | None = None):
        self.binary = binary or settings.transport_bin
        self.timeout_seconds = timeout_seconds or settings.transport_timeout_seconds

    async def send(
        self,
        agent_id: str,
        session_key: str,
        prompt: str,
        timeout_seconds: float | None = None,
    ) -> TransportResult:
        args = ["agent", "--agent", agent_id, "--message", prompt, "--json"]
        stdout, stderr = await self._run(args, timeout_seconds or self.timeout_seconds)
        return result_from_output(parse_cli_output(stdout, stderr))

    async def set_model(self, agent_id: str, model: str) -> None:
        await self._run(["models", "--agent", agent_id, "set", model], 60.0)

    async def _run(self, args: list[str], timeout_seconds: float) -> tuple[str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise TransportError(f"Agent runtime binary not found: {self.binary}") from e

        try:
            raw_out, raw_err = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Killing agent runtime after {timeout_seconds:g}s: {_summarize_args(args)}")
            _kill_process_group(proc)
            await proc.wait()
            raise TransportTimeout(timeout_seconds)
        except asyncio.CancelledError:
            _kill_process_group(proc)
            raise

        stdout = raw_out.decode("utf-8", errors="replace")
        stderr = raw_err.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise error_from_text(
                stderr.strip()
                or f"{self.binary} exited with code {proc.returncode}; args={_summarize_args(args)}"
            )
        return stdout, stderr
