"""CLI interface for Supportdesk."""

from .core.agent_client import AgentClient, AgentError
from .core.json_utils import parse_llm_json, recover_llm_response
from .models.config import ParseOptions, Settings
from .models.responses import AgentReply, ChatRequest
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.markdown import Markdown

# Setup logger
logger = logging.getLogger(__name__)


# Initialize Typer app and Rich console
app = typer.Typer(
    name="supportdesk",
    help="Supportdesk - support agent relay and tolerant LLM JSON parser"
)
console = Console()


def setup_logging(log_level: str = "INFO"):
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler("supportdesk.log"),
            logging.StreamHandler()
        ]
    )


def load_settings(verbose: bool = False) -> Settings:
    """Load settings and configure logging."""
    try:
        settings = Settings()
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to load settings: {e}")
        raise typer.Exit(1)
    # Only log at the configured level in verbose mode
    setup_logging(settings.log_level if verbose else "ERROR")
    return settings


def display_parse_result(result: Any, original: str):
    """Display the outcome of a parse."""
    if isinstance(result, str) and result == original:
        console.print(Panel(
            result or "[dim](empty)[/dim]",
            title="Plain text (no JSON recovered)",
            border_style="yellow"
        ))
        return

    console.print_json(json.dumps(result, ensure_ascii=False))


def display_agent_reply(reply: AgentReply):
    """Display a relayed agent reply."""
    text = reply.reply_text()
    if text:
        console.print(Panel(
            Markdown(text),
            title="🤖 Support Agent",
            border_style="blue"
        ))

    if isinstance(reply.response, dict):
        details = {k: v for k, v in reply.response.items() if k != "response"}
        if details:
            console.print_json(json.dumps(details, ensure_ascii=False))
    elif reply.is_structured:
        console.print_json(json.dumps(reply.response, ensure_ascii=False))
    elif not text:
        console.print("[dim]The agent returned an empty reply.[/dim]")


@app.command()
def parse(
    source: Optional[Path] = typer.Argument(
        None, help="File holding the model output (reads stdin when omitted)"),
    fix: bool = typer.Option(
        False, "--fix/--no-fix", help="Repair the full text before parsing"),
    max_blocks: int = typer.Option(
        1, "--max-blocks", "-b", help="Candidate JSON spans to consider"),
    prefer_first: bool = typer.Option(
        True, "--prefer-first/--prefer-largest", help="Span selection rule"),
    partial: bool = typer.Option(
        False, "--partial", help="Accept the longest valid prefix of truncated JSON"),
    pipeline: bool = typer.Option(
        False, "--pipeline", help="Use the agent reply recovery pipeline"),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging")
):
    """Recover JSON from model output."""
    settings = load_settings(verbose)

    if source is not None:
        try:
            text = source.read_text(encoding="utf-8")
        except OSError as e:
            console.print(f"[red]✗[/red] Cannot read {source}: {e}")
            raise typer.Exit(1)
    else:
        text = sys.stdin.read()

    if pipeline:
        result = recover_llm_response(text, max_blocks=settings.parse_max_blocks)
    else:
        options = ParseOptions(
            attempt_fix=fix,
            max_blocks=max_blocks,
            prefer_first=prefer_first,
            allow_partial=partial
        )
        result = parse_llm_json(text, options)

    display_parse_result(result, text)


@app.command()
def ask(
    message: str = typer.Argument(..., help="Message for the support agent"),
    session_id: Optional[str] = typer.Option(
        None, "--session", "-s", help="Session ID to continue"),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging")
):
    """Send one message to the support agent."""
    settings = load_settings(verbose)

    async def _ask():
        async with AgentClient(settings.agent_config) as client:
            return await client.chat(ChatRequest(message=message, session_id=session_id))

    try:
        reply = asyncio.run(_ask())
    except AgentError as e:
        console.print(f"[red]✗[/red] Agent request failed: {e}")
        raise typer.Exit(1)

    display_agent_reply(reply)
    console.print(f"[dim]Session ID: {reply.session_id}[/dim]")


@app.command()
def chat(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging")
):
    """Chat with the support agent interactively."""
    settings = load_settings(verbose)

    async def _chat():
        session_id = None
        user_id = None
        console.print(Panel(
            Markdown("Ask the support agent anything. Type `/exit` to leave."),
            title="Support Chat",
            border_style="green"
        ))
        async with AgentClient(settings.agent_config) as client:
            while True:
                user_input = Prompt.ask("[bold cyan]You")

                if not user_input.strip():
                    continue
                if user_input.strip() in ("/exit", "/quit"):
                    break

                try:
                    reply = await client.chat(ChatRequest(
                        message=user_input,
                        user_id=user_id,
                        session_id=session_id
                    ))
                except AgentError as e:
                    logger.error(f"Agent request failed: {e}")
                    console.print(f"[red]✗[/red] {e}")
                    continue

                session_id = reply.session_id
                user_id = reply.user_id
                display_agent_reply(reply)

    asyncio.run(_chat())


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
