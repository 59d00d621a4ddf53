"""Logging setup and rich console rendering of a streamed reply."""

from __future__ import annotations

import logging
import time

from rich.console import Console
from rich.panel import Panel

from deepseek_stream.core.decoder import ChoiceDelta, Usage

console = Console()


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet noisy libs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)


class StreamPrinter:
    """Writes deltas to the console as they arrive; reasoning is dimmed."""

    def __init__(self, show_reasoning: bool = True) -> None:
        self.show_reasoning = show_reasoning
        self.start_time = 0.0
        self.first_token_at: float | None = None
        self._in_reasoning = False

    def start(self) -> None:
        self.start_time = time.time()

    def write(self, delta: ChoiceDelta) -> None:
        if delta.reasoning_content and self.show_reasoning:
            self._mark_first_token()
            self._in_reasoning = True
            console.print(
                delta.reasoning_content,
                style="dim",
                end="",
                soft_wrap=True,
                markup=False,
                highlight=False,
            )
        if delta.content:
            self._mark_first_token()
            if self._in_reasoning:
                console.print("\n")
                self._in_reasoning = False
            console.print(delta.content, end="", soft_wrap=True, markup=False, highlight=False)

    def summary(self, finish_reason: str | None, usage: Usage | None) -> Panel:
        elapsed = time.time() - self.start_time if self.start_time else 0
        ttft = (
            f"{(self.first_token_at - self.start_time) * 1000:,.0f} ms"
            if self.first_token_at
            else "-"
        )
        lines = [f" Finish: {finish_reason or '-'}  |  TTFT: {ttft}  |  Total: {elapsed:.1f}s"]
        if usage is not None:
            lines.append(
                f" Tokens: {usage.prompt_tokens:,} in  |  {usage.completion_tokens:,} out"
                f"  |  {usage.total_tokens:,} total"
            )
        return Panel("\n".join(lines), border_style="blue")

    def _mark_first_token(self) -> None:
        if self.first_token_at is None:
            self.first_token_at = time.time()
