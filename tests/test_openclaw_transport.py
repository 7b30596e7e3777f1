"""
Agent runtime CLI adapter tests.

Parsing is tested directly; the process handling runs small shell scripts in
place of the real binary.
"""

import json
import stat

import pytest

from controlgate.engine.errors import (
    PermanentExecutionError,
    RateLimitError,
    TransientTransportError,
    TransportError,
    TransportTimeout,
)
from controlgate.transport.base import NON_JSON_OUTPUT, error_from_text
from controlgate.transport.openclaw import OpenClawTransport, parse_cli_output, result_from_output


def test_parse_json_surrounded_by_log_noise():
    stdout = 'loading plugins...\n{"runId": "r-1", "status": "ok", "result": {"payloads": [{"text": "hi"}]}}\n'

    data = parse_cli_output(stdout, "")

    assert data["runId"] == "r-1"
    result = result_from_output(data)
    assert result.run_id == "r-1"
    assert result.status == "ok"
    assert result.response_text == "hi"


def test_parse_falls_back_to_stderr():
    data = parse_cli_output("not json", '{"status": "error", "summary": "boom"}')

    assert data == {"status": "error", "summary": "boom"}


def test_parse_top_level_list_becomes_payloads():
    data = parse_cli_output('[{"text": "one"}, {"text": "  "}, "two"]', "")

    assert result_from_output(data).response_text == "one\n\ntwo"


def test_non_json_output_is_reported_as_error_result():
    data = parse_cli_output("plain words", "")

    result = result_from_output(data)
    assert result.status == "error"
    assert result.summary == NON_JSON_OUTPUT
    assert result.response_text == "plain words"


def test_empty_output_raises():
    with pytest.raises(TransportError, match="Failed to parse agent runtime output"):
        parse_cli_output("   ", "")


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Error: 429 Too Many Requests", RateLimitError),
        ("session file locked by another run", TransientTransportError),
        ("HTTP 401 unauthorized", PermanentExecutionError),
        ("something odd happened", TransportError),
    ],
)
def test_error_from_text_classifies(text, expected):
    error = error_from_text(text)

    assert type(error) is expected
    assert error.message == text


def _script(tmp_path, body: str) -> str:
    path = tmp_path / "fake-openclaw"
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


@pytest.mark.asyncio
async def test_send_runs_binary_and_parses_result(tmp_path):
    payload = json.dumps({"runId": "r-9", "status": "ok", "result": {"payloads": [{"text": "done"}]}})
    transport = OpenClawTransport(binary=_script(tmp_path, f"echo '{payload}'"))

    result = await transport.send("alice", "agent:alice:main", "You are alice.", timeout_seconds=10)

    assert result.run_id == "r-9"
    assert result.response_text == "done"


@pytest.mark.asyncio
async def test_nonzero_exit_is_classified_from_stderr(tmp_path):
    transport = OpenClawTransport(
        binary=_script(tmp_path, "echo 'session file locked (timeout 10000ms)' >&2\nexit 1")
    )

    with pytest.raises(TransientTransportError):
        await transport.send("alice", "agent:alice:main", "hi", timeout_seconds=10)


@pytest.mark.asyncio
async def test_timeout_kills_process(tmp_path):
    transport = OpenClawTransport(binary=_script(tmp_path, "sleep 5"))

    with pytest.raises(TransportTimeout):
        await transport.send("alice", "agent:alice:main", "hi", timeout_seconds=0.2)


@pytest.mark.asyncio
async def test_missing_binary_raises_transport_error(tmp_path):
    transport = OpenClawTransport(binary=str(tmp_path / "does-not-exist"))

    with pytest.raises(TransportError, match="binary not found"):
        await transport.set_model("alice", "openai/gpt-4o")
