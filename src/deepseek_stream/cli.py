"""Click CLI definition for deepseek-stream."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.markup import escape

from deepseek_stream import __version__
from deepseek_stream.client import DeepSeekClient, system_message, user_message
from deepseek_stream.config import ClientConfig, load_config
from deepseek_stream.core.controller import StreamController
from deepseek_stream.errors import StreamError
from deepseek_stream.utils.logging import StreamPrinter, console, setup_logging

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """deepseek-stream: streaming chat-completion client."""


@main.command()
@click.argument("prompt")
@click.option("--model", type=str, help="Model name (deepseek-chat, deepseek-reasoner)")
@click.option("--base-url", type=str, help="API base URL")
@click.option("--api-key", type=str, help="API key (default: $DEEPSEEK_API_KEY)")
@click.option("--system", "system_prompt", type=str, help="System prompt")
@click.option("--max-tokens", type=int, help="Max tokens to generate")
@click.option("--temperature", type=float, help="Sampling temperature")
@click.option("--timeout", type=float, help="Request timeout in seconds")
@click.option("--config", "config_path", type=str, help="Path to config YAML file")
@click.option("--hide-reasoning", is_flag=True, help="Do not print reasoning tokens")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def chat(
    prompt: str,
    model: str | None,
    base_url: str | None,
    api_key: str | None,
    system_prompt: str | None,
    max_tokens: int | None,
    temperature: float | None,
    timeout: float | None,
    config_path: str | None,
    hide_reasoning: bool,
    verbose: bool,
) -> None:
    """Stream a reply to PROMPT."""
    setup_logging(verbose)

    config = load_config(
        config_path,
        {"model": model, "base_url": base_url, "api_key": api_key, "timeout": timeout},
    )
    if not config.api_key:
        console.print("[yellow]Warning:[/yellow] no API key configured")

    messages = [user_message(prompt)]
    if system_prompt:
        messages.insert(0, system_message(system_prompt))

    printer = StreamPrinter(show_reasoning=not hide_reasoning)
    streams: list[StreamController] = []
    try:
        asyncio.run(_stream(config, messages, printer, streams, max_tokens, temperature))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted, stream cancelled[/yellow]")
        _report(streams, printer)
        sys.exit(130)
    except StreamError as e:
        console.print(f"\n[red]Error:[/red] {escape(str(e))}")
        _report(streams, printer)
        sys.exit(1)

    _report(streams, printer)


def _report(streams: list[StreamController], printer: StreamPrinter) -> None:
    """Print the summary and any tool calls, including for a partial reply."""
    if not streams:
        return
    controller = streams[0]
    console.print()
    message = controller.message(0)
    finish = message.finish_reason.value if message and message.finish_reason else None
    console.print(printer.summary(finish, controller.usage))
    if message and message.tool_calls:
        for call in message.tool_calls:
            console.print(
                f"  [bold]{escape(call.name)}[/bold]({escape(call.arguments)})  id={call.id}"
            )


async def _stream(
    config: ClientConfig,
    messages: list[dict],
    printer: StreamPrinter,
    streams: list[StreamController],
    max_tokens: int | None,
    temperature: float | None,
) -> None:
    async with DeepSeekClient(config) as client:
        async with client.stream_chat(
            messages, max_tokens=max_tokens, temperature=temperature
        ) as controller:
            streams.append(controller)
            printer.start()
            async for delta in controller:
                printer.write(delta)


if __name__ == "__main__":
    main()
