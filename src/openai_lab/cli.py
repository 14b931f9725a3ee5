"""Command-line interface for OpenAI Lab."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from openai_lab import __version__
from openai_lab.config import ConfigError, LabConfig, load_config
from openai_lab.core.bulk import BenchConfiguration, BulkTestRunner, compare, summarize
from openai_lab.core.pricing import calculate_cost, estimate_token_count, get_effective_price
from openai_lab.core.store import InMemoryConversationStore, StaticPriceTable
from openai_lab.core.orchestrator import MessageOrchestrator
from openai_lab.errors import APIError
from openai_lab.llm.client import AsyncAPIClient
from openai_lab.types import ModelRecord, TokenUsage

_logger = logging.getLogger(__name__)

console = Console()

_HISTORY_PATH = Path.home() / ".config" / "openai-lab" / "history"


def _client_for(config: LabConfig) -> AsyncAPIClient:
    return AsyncAPIClient(config.active_profile, cache_ttl=config.model_cache_ttl)


def _fail(message: str) -> None:
    console.print(f"[red]{escape(message)}[/red]")
    sys.exit(1)


async def _known_models(client: AsyncAPIClient) -> dict[str, ModelRecord]:
    """Model records by id, for provider-reported prices.  Empty if unlisted."""
    try:
        records = await client.list_models()
    except APIError as e:
        _logger.warning("Could not list models, using configured prices only: %s", e.message)
        return {}
    return {m.id: m for m in records}


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to openai_lab.yaml (auto-detected from CWD or ~/.config/openai-lab/)")
@click.option("--profile", "-p", default=None, help="Endpoint profile to use")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="openai-lab")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, profile: str | None, verbose: bool):
    """OpenAI Lab - exercise OpenAI-compatible chat APIs."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config = load_config(config_path)
    except ConfigError as e:
        _fail(str(e))
        return
    if profile:
        if profile not in config.profiles:
            _fail(f"Unknown profile: {profile}")
        config.profile = profile
    ctx.obj = config


# ---------------------------------------------------------------------------
# check / models
# ---------------------------------------------------------------------------

@main.command()
@click.pass_obj
def check(config: LabConfig):
    """Test the connection to the active endpoint."""

    async def _run():
        async with _client_for(config) as client:
            return await client.test_connection()

    result = asyncio.run(_run())
    url = config.active_profile.url
    if result.success:
        console.print(f"[green]OK[/green] {url} ({result.response_time:.0f}ms)")
        return
    _fail(f"FAILED {url} [{result.error_kind}] {result.error} ({result.response_time:.0f}ms)")


@main.command()
@click.option("--refresh", is_flag=True, help="Bypass the model cache")
@click.pass_obj
def models(config: LabConfig, refresh: bool):
    """List the models the endpoint offers."""

    async def _run():
        async with _client_for(config) as client:
            return await client.list_models(force_refresh=refresh)

    try:
        records = asyncio.run(_run())
    except APIError as e:
        _fail(f"Could not list models: {e.message}")
        return

    table = Table(title=f"Models @ {config.active_profile.url}")
    table.add_column("ID", style="bold")
    table.add_column("Type")
    table.add_column("Context", justify="right")
    table.add_column("Provider")
    table.add_column("Price in/out (1K)", justify="right")
    table.add_column("Capabilities", style="dim")
    for m in records:
        override = config.prices.get(m.id)
        price = get_effective_price(m, override)
        price_text = f"{price.input:g} / {price.output:g}" if price else "-"
        table.add_row(
            m.id, m.type, str(m.context_length), m.provider,
            price_text, ", ".join(m.capability_types),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------

def _print_delta(chunk: str) -> None:
    console.print(chunk, end="", markup=False, highlight=False)


async def _send(orchestrator: MessageOrchestrator, store: InMemoryConversationStore,
                prompt: str, stream: bool) -> bool:
    result = await orchestrator.send_message(
        prompt, on_delta=_print_delta if stream else None,
    )
    conv = store.get_active_conversation()
    msg = conv.find(result.message_id) if conv and result.message_id else None
    if stream:
        console.print()
    elif msg is not None and result.success:
        console.print(Markdown(msg.content))

    if result.condition == "cancelled":
        console.print("[yellow]Cancelled[/yellow]")
        return False
    if not result.success:
        console.print(f"[red]Error ({result.condition}): {escape(result.error)}[/red]")
        return False
    tokens = result.tokens or TokenUsage()
    console.print(
        f"[dim]{tokens.input} in / {tokens.output} out tokens, "
        f"${result.cost:.6f}, {result.response_time or 0:.0f}ms[/dim]"
    )
    return True


async def _send_interruptible(orchestrator: MessageOrchestrator,
                              store: InMemoryConversationStore,
                              prompt: str, stream: bool) -> bool:
    """Like :func:`_send`, but Ctrl-C cancels the exchange instead of the REPL.

    ``asyncio.run`` turns SIGINT into a cancellation of the main task, so
    the handler is swapped for one that cancels in-flight requests only.
    """
    loop = asyncio.get_running_loop()

    def _on_sigint(signum, frame) -> None:
        loop.call_soon_threadsafe(orchestrator.cancel_all)

    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, _on_sigint)
    try:
        return await _send(orchestrator, store, prompt, stream)
    finally:
        signal.signal(signal.SIGINT, previous)


@main.command()
@click.argument("prompt", required=False)
@click.option("--model", "-m", default=None, help="Model id (defaults to the profile's model)")
@click.option("--system", "-s", "system_prompt", default="", help="System prompt")
@click.option("--no-stream", is_flag=True, help="Wait for the full response")
@click.pass_obj
def chat(config: LabConfig, prompt: str | None, model: str | None,
         system_prompt: str, no_stream: bool):
    """Send PROMPT, or start an interactive chat when PROMPT is omitted."""
    stream = not no_stream

    async def _run() -> bool:
        store = InMemoryConversationStore()
        async with _client_for(config) as client:
            orchestrator = MessageOrchestrator(
                client, store,
                prices=StaticPriceTable(config.prices),
                max_retries=config.max_retries,
                retry_delay=config.retry_delay,
            )
            try:
                await orchestrator.refresh_models()
            except APIError as e:
                _logger.warning("Could not list models, using configured prices only: %s", e.message)
            store.create_conversation(
                model_id=model or config.active_profile.model,
                system_prompt=system_prompt,
            )
            if prompt:
                return await _send(orchestrator, store, prompt, stream)
            await _interactive(orchestrator, store, stream)
            return True

    if not asyncio.run(_run()):
        sys.exit(1)


async def _interactive(orchestrator: MessageOrchestrator,
                       store: InMemoryConversationStore, stream: bool) -> None:
    _HISTORY_PATH.parent.mkdir(parents=True, exist_ok=True)
    session: PromptSession = PromptSession(history=FileHistory(str(_HISTORY_PATH)))
    console.print("[dim]Type /retry to regenerate the last answer, /quit to exit[/dim]")

    while True:
        try:
            user_input = (await session.prompt_async("> ")).strip()
        except (EOFError, KeyboardInterrupt):
            break
        if not user_input:
            continue
        if user_input in ("/quit", "/exit"):
            break
        if user_input == "/retry":
            conv = store.get_active_conversation()
            last = next(
                (m for m in reversed(conv.messages) if m.role == "assistant"), None,
            ) if conv else None
            if last is None:
                console.print("[yellow]Nothing to retry[/yellow]")
                continue
            result = await orchestrator.retry_message(
                last.id, on_delta=_print_delta if stream else None,
            )
            if stream:
                console.print()
            elif result.success:
                console.print(Markdown(conv.find(last.id).content))
            if not result.success:
                console.print(f"[red]Error ({result.condition}): {escape(result.error)}[/red]")
            continue
        if user_input == "/usage":
            conv = store.get_active_conversation()
            console.print(
                f"[dim]{conv.total_tokens} tokens, ${conv.total_cost:.6f}[/dim]"
            )
            continue

        await _send_interruptible(orchestrator, store, user_input, stream)


# ---------------------------------------------------------------------------
# bench
# ---------------------------------------------------------------------------

@main.command()
@click.option("--model", "-m", "model_ids", multiple=True, required=True,
              help="Model id (repeatable)")
@click.option("--prompt", "-P", required=True, help="Prompt sent to every model")
@click.option("--iterations", "-n", default=1, show_default=True, help="Requests per model")
@click.option("--concurrency", "-k", default=None, type=int,
              help="Maximum requests in flight")
@click.option("--timeout", "-t", default=None, type=float,
              help="Per-request timeout in seconds")
@click.pass_obj
def bench(config: LabConfig, model_ids: tuple[str, ...], prompt: str, iterations: int,
          concurrency: int | None, timeout: float | None):
    """Benchmark one prompt across models."""
    test_config = BenchConfiguration(
        name="cli",
        model_ids=list(model_ids),
        prompt=prompt,
        iterations=iterations,
        concurrent=concurrency or config.bulk_concurrency,
        timeout=timeout or config.bulk_timeout,
    )

    async def _run():
        async with _client_for(config) as client:
            runner = BulkTestRunner(
                client,
                prices=StaticPriceTable(config.prices),
                models=await _known_models(client),
            )
            with console.status(f"Running {test_config.total_requests} request(s)...") as status:
                def _progress(progress: float, completed: int) -> None:
                    status.update(
                        f"{completed}/{test_config.total_requests} done ({progress:.0f}%)"
                    )
                return await runner.run(test_config, on_progress=_progress)

    results = asyncio.run(_run())

    table = Table(title="Benchmark")
    table.add_column("Model", style="bold")
    table.add_column("OK", justify="right")
    table.add_column("Avg ms", justify="right")
    table.add_column("Min ms", justify="right")
    table.add_column("Max ms", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Tok/s", justify="right")
    table.add_column("Cost", justify="right")
    for s in summarize(results):
        table.add_row(
            s.model_id,
            f"{s.successful_iterations}/{s.total_iterations}",
            f"{s.average_response_time:.0f}",
            f"{s.min_response_time:.0f}",
            f"{s.max_response_time:.0f}",
            str(s.total_tokens.total),
            f"{s.tokens_per_second:.1f}",
            f"${s.total_cost:.6f}",
        )
    console.print(table)

    for r in results:
        if not r.success:
            console.print(f"[red]{r.model_id} #{r.iteration}: {escape(r.error)}[/red]")
    for line in compare(results).recommendations:
        console.print(f"[dim]- {line}[/dim]")


# ---------------------------------------------------------------------------
# tokens
# ---------------------------------------------------------------------------

@main.command()
@click.argument("text")
@click.option("--model", "-m", default=None, help="Model id to price against")
@click.option("--output-tokens", "-o", default=0, show_default=True,
              help="Expected completion length")
@click.option("--remote", is_flag=True,
              help="Also consult provider-reported prices from the endpoint")
@click.pass_obj
def tokens(config: LabConfig, text: str, model: str | None, output_tokens: int,
           remote: bool):
    """Estimate TEXT's token count and cost."""
    count = estimate_token_count(text)
    console.print(f"~{count} tokens")

    model = model or config.active_profile.model
    record = None
    if model and remote:

        async def _run() -> dict[str, ModelRecord]:
            async with _client_for(config) as client:
                return await _known_models(client)

        record = asyncio.run(_run()).get(model)
    price = get_effective_price(record, config.prices.get(model)) if model else None
    if price is None:
        console.print(f"[dim]No price configured for {model or 'the default model'}[/dim]")
        return
    cost = calculate_cost(
        TokenUsage.of(count, output_tokens), price.input, price.output, price.currency,
    )
    console.print(
        f"{model}: {cost.total_cost:.6f} {cost.currency} "
        f"(input {cost.input_cost:.6f}, output {cost.output_cost:.6f})"
    )


if __name__ == "__main__":
    main()
