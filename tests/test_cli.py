"""Tests for the openai-lab command line."""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import yaml
from click.testing import CliRunner

from openai_lab import cli
from openai_lab.cli import _send_interruptible, main
from openai_lab.core.store import InMemoryConversationStore
from openai_lab.llm.client import AsyncAPIClient
from openai_lab.types import ConnectionTestResult, SendResult


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "openai_lab.yaml"
    path.write_text(yaml.dump({
        "profiles": {"local": {"url": "http://localhost:1234/v1", "model": "m"}},
        "prices": {"m": {"input": 1.0, "output": 1.0}},
    }))
    return path


def _mock_client(**methods) -> MagicMock:
    client = MagicMock()
    client.__aenter__.return_value = client
    for name, value in methods.items():
        setattr(client, name, AsyncMock(return_value=value))
    return client


class TestTokens:
    def test_estimate_and_cost(self, config_file: Path):
        result = CliRunner().invoke(
            main, ["-c", str(config_file), "tokens", "hello world", "-o", "10"],
        )
        assert result.exit_code == 0, result.output
        assert "~3 tokens" in result.output
        # (3 + 10) tokens at 1.0 per 1K
        assert "0.013000 USD" in result.output

    def test_unpriced_model(self, config_file: Path):
        result = CliRunner().invoke(
            main, ["-c", str(config_file), "tokens", "hello", "-m", "other"],
        )
        assert result.exit_code == 0
        assert "No price configured for other" in result.output


class TestCheck:
    def test_success(self, config_file: Path):
        client = _mock_client(
            test_connection=ConnectionTestResult(success=True, response_time=12.0),
        )
        with patch("openai_lab.cli.AsyncAPIClient", return_value=client):
            result = CliRunner().invoke(main, ["-c", str(config_file), "check"])
        assert result.exit_code == 0, result.output
        assert "OK" in result.output

    def test_failure_exits_non_zero(self, config_file: Path):
        client = _mock_client(test_connection=ConnectionTestResult(
            success=False, response_time=5.0,
            error="Invalid API key or insufficient permissions", error_kind="auth",
        ))
        with patch("openai_lab.cli.AsyncAPIClient", return_value=client):
            result = CliRunner().invoke(main, ["-c", str(config_file), "check"])
        assert result.exit_code == 1
        assert "auth" in result.output


class TestConfigErrors:
    def test_unknown_profile(self, config_file: Path):
        result = CliRunner().invoke(main, ["-c", str(config_file), "-p", "nope", "tokens", "x"])
        assert result.exit_code == 1
        assert "Unknown profile" in result.output

    def test_invalid_yaml(self, tmp_path: Path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("profiles: [oops\n")
        result = CliRunner().invoke(main, ["-c", str(bad), "tokens", "x"])
        assert result.exit_code == 1
        assert "Invalid YAML" in result.output


# ---------------------------------------------------------------------------
# Commands that talk to the endpoint, served by httpx.MockTransport
# ---------------------------------------------------------------------------

_MODELS = {"data": [
    {"id": "m", "owned_by": "local"},
    # Only the endpoint knows this model's price
    {"id": "p", "pricing": {"input": 1.0, "output": 1.0}},
]}


def _sse(*contents: str) -> str:
    body = "".join(
        f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}\n\n" for c in contents
    )
    return body + "data: [DONE]\n\n"


class Endpoint:
    """Answers /models and /chat/completions; ``status`` fails completions."""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json=_MODELS)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "down"}})
        if json.loads(request.content)["stream"]:
            return httpx.Response(200, text=_sse("Hel", "lo"))
        return httpx.Response(200, json={
            "choices": [{"message": {"role": "assistant", "content": "Hello there"}}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
        })

    @property
    def completions(self) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith("/chat/completions"))


@pytest.fixture
def endpoint(monkeypatch: pytest.MonkeyPatch) -> Endpoint:
    server = Endpoint()
    monkeypatch.setattr(
        cli, "_client_for",
        lambda config: AsyncAPIClient(
            config.active_profile, transport=httpx.MockTransport(server),
        ),
    )
    monkeypatch.setattr(cli.console, "width", 200)
    return server


class TestChat:
    def test_one_shot_streaming(self, config_file: Path, endpoint: Endpoint):
        result = CliRunner().invoke(main, ["-c", str(config_file), "chat", "Hi"])
        assert result.exit_code == 0, result.output
        assert "Hello" in result.output
        assert "out tokens" in result.output
        assert endpoint.completions == 1

    def test_one_shot_without_streaming(self, config_file: Path, endpoint: Endpoint):
        result = CliRunner().invoke(
            main, ["-c", str(config_file), "chat", "Hi", "--no-stream"],
        )
        assert result.exit_code == 0, result.output
        assert "Hello there" in result.output
        # Configured override for "m": 30 tokens at 1.0 per 1K
        assert "10 in / 20 out tokens, $0.030000" in result.output

    def test_provider_price_from_model_listing(self, config_file: Path, endpoint: Endpoint):
        result = CliRunner().invoke(
            main, ["-c", str(config_file), "chat", "Hi", "--no-stream", "-m", "p"],
        )
        assert result.exit_code == 0, result.output
        assert "$0.030000" in result.output

    def test_failure_exits_non_zero(self, config_file: Path, endpoint: Endpoint):
        endpoint.status = 500
        result = CliRunner().invoke(
            main, ["-c", str(config_file), "chat", "Hi", "--no-stream"],
        )
        assert result.exit_code == 1
        assert "Server error" in result.output


class TestModels:
    def test_table(self, config_file: Path, endpoint: Endpoint):
        result = CliRunner().invoke(main, ["-c", str(config_file), "models"])
        assert result.exit_code == 0, result.output
        assert "Models @ http://localhost:1234/v1" in result.output
        assert "Local" in result.output
        # "m" priced by config, "p" by the endpoint
        assert result.output.count("1 / 1") == 2


class TestBench:
    def test_summary_rows(self, config_file: Path, endpoint: Endpoint):
        result = CliRunner().invoke(
            main, ["-c", str(config_file), "bench", "-m", "m", "-m", "p", "-P", "Hi", "-n", "2"],
        )
        assert result.exit_code == 0, result.output
        assert result.output.count("2/2") == 2
        # Both models cost 0.03 per request, one by override and one by listing
        assert result.output.count("$0.060000") == 2
        assert endpoint.completions == 4

    def test_failures_listed(self, config_file: Path, endpoint: Endpoint):
        endpoint.status = 500
        result = CliRunner().invoke(
            main, ["-c", str(config_file), "bench", "-m", "m", "-P", "Hi", "-n", "2"],
        )
        assert result.exit_code == 0, result.output
        assert "0/2" in result.output
        assert "m #1: Server error, please try again later" in result.output


class TestTokensRemote:
    def test_provider_price(self, config_file: Path, endpoint: Endpoint):
        result = CliRunner().invoke(
            main, ["-c", str(config_file), "tokens", "hello world", "-m", "p", "-o", "10", "--remote"],
        )
        assert result.exit_code == 0, result.output
        assert "p: 0.013000 USD" in result.output


# ---------------------------------------------------------------------------
# Ctrl-C during an exchange
# ---------------------------------------------------------------------------

class TestInterrupt:
    async def test_sigint_cancels_exchange_not_repl(self):
        store = InMemoryConversationStore()
        store.create_conversation()
        started = asyncio.Event()
        released = asyncio.Event()

        async def send_message(text, on_delta=None):
            started.set()
            await released.wait()
            return SendResult(success=False, error="Request cancelled", condition="cancelled")

        orchestrator = MagicMock()
        orchestrator.send_message = send_message
        orchestrator.cancel_all.side_effect = released.set

        previous = signal.getsignal(signal.SIGINT)
        task = asyncio.ensure_future(_send_interruptible(orchestrator, store, "Hi", False))
        await started.wait()

        handler = signal.getsignal(signal.SIGINT)
        assert handler is not previous
        handler(signal.SIGINT, None)

        assert await task is False
        orchestrator.cancel_all.assert_called_once()
        assert signal.getsignal(signal.SIGINT) is previous
