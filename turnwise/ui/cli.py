"""Rich CLI interface for turnwise.

Features:
- Rich markdown rendering
- Streaming token output
- Slash commands (/model, /memory, /clear, /quit, etc.)
- Ctrl+C stops the reply being streamed
"""

from __future__ import annotations

import asyncio
import signal

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from turnwise.config import TurnwiseConfig, get_turnwise_home
from turnwise.core.engine import SessionOrchestrator, Turn, TurnCallbacks
from turnwise.core.store import ChatStore
from turnwise.core.types import Message, Role

console = Console()


BANNER = r"""
 _                        _
| |_ _  _ _ _ _ _ __ __ _(_)___ ___
|  _| || | '_| ' \\ V  V / (_-</ -_)
 \__|\_,_|_| |_||_\_/\_/|_/__/\___|
"""

HELP_TEXT = """
**Slash Commands:**
- `/help` - Show this help message
- `/model <name>` - Switch model for this session (e.g., `/model ollama/llama3.1`)
- `/model` - Show current model
- `/clear` - Start a fresh context here (run again to undo)
- `/reset` - Drop all messages and memory of this session
- `/memory` - Show the long-term memory summary
- `/topic` - Show the session topic
- `/stats` - Show session counters
- `/quit` or `/exit` - Exit turnwise

Paste a single URL to chat about the page behind it.
Press **Ctrl+C** while a reply streams to stop it.
"""


def _reply_panel(message: Message, model: str) -> Panel:
    border = "red" if message.is_error else "blue"
    body = message.content or "..."
    return Panel(
        Markdown(body),
        title=f"[bold {border}]{model}[/bold {border}]",
        border_style=border,
        padding=(1, 2),
    )


class LiveCallbacks(TurnCallbacks):
    """Re-renders the streaming reply into a rich Live display."""

    def __init__(self, live: Live, model: str) -> None:
        self.live = live
        self.model = model

    def on_update_messages(self, messages: list[Message]) -> None:
        if not messages or messages[-1].role is not Role.ASSISTANT:
            return
        self.live.update(_reply_panel(messages[-1], self.model))

    def on_update_topic(self, topic: str) -> None:
        console.print(f"[dim]Topic: {topic}[/dim]")


class CLI:
    """Interactive CLI for turnwise."""

    def __init__(self, engine: SessionOrchestrator, config: TurnwiseConfig) -> None:
        self.engine = engine
        self.config = config
        self.store = ChatStore(engine, config)

        # Setup prompt history
        history_dir = get_turnwise_home() / "history"
        history_dir.mkdir(parents=True, exist_ok=True)
        self.prompt_session: PromptSession[str] = PromptSession(
            history=FileHistory(str(history_dir / "cli_input.txt")),
        )

    @property
    def model(self) -> str:
        return self.store.current_session().bot.model_config.model

    async def run(self) -> None:
        """Main CLI loop."""
        self._print_banner()

        with patch_stdout():
            while True:
                try:
                    user_input = await asyncio.get_event_loop().run_in_executor(
                        None,
                        lambda: self.prompt_session.prompt("\n> "),
                    )
                except (EOFError, KeyboardInterrupt):
                    console.print("\n[dim]Goodbye![/dim]")
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue

                # Handle slash commands
                if user_input.startswith("/"):
                    should_continue = await self._handle_command(user_input)
                    if not should_continue:
                        break
                    continue

                await self._process_message(user_input)

    async def _process_message(self, user_text: str) -> None:
        """Run a turn, streaming the reply into a live panel."""
        session = self.store.current_session()
        model = self.model
        console.print()

        with Live(console=console, refresh_per_second=12) as live:
            callbacks = LiveCallbacks(live, model)
            try:
                turn = await self.engine.start_turn(
                    session,
                    user_text,
                    api_key=self.config.get_api_key(model),
                    callbacks=callbacks,
                )
            except Exception as e:
                console.print(f"\n[red]Error: {e}[/red]")
                return

            callbacks.on_update_messages(session.snapshot_messages())
            await self._wait_for_reply(turn)

        if turn.controller is not None and turn.controller.aborted:
            console.print("[yellow]Stopped[/yellow]")

    async def _wait_for_reply(self, turn: Turn) -> None:
        """Wait for a reply; SIGINT stops it instead of exiting."""
        loop = asyncio.get_running_loop()
        msg_id = turn.bot_message.id

        def _stop() -> None:
            self.engine.cancel(turn.session.id, msg_id)

        try:
            loop.add_signal_handler(signal.SIGINT, _stop)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: KeyboardInterrupt lands below

        try:
            await turn.wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            _stop()
            await turn.wait()
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

    async def _handle_command(self, command: str) -> bool:
        """Handle a slash command. Returns False if should exit."""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""
        session = self.store.current_session()

        if cmd in ("/quit", "/exit", "/q"):
            console.print("[dim]Goodbye![/dim]")
            return False

        elif cmd == "/help":
            console.print(Markdown(HELP_TEXT))

        elif cmd == "/model":
            if arg:
                def _switch(s) -> None:
                    s.bot.model_config = s.bot.model_config.model_copy(update={"model": arg})

                session.update(_switch)
                console.print(f"[green]Model switched to: {arg}[/green]")
            else:
                console.print(f"[blue]Current model: {self.model}[/blue]")

        elif cmd == "/clear":
            session.clear_context()
            if session.clear_context_index is None:
                console.print("[green]Earlier messages are back in context[/green]")
            else:
                console.print("[green]Context cleared, earlier messages are kept but not sent[/green]")

        elif cmd == "/reset":
            await self.engine.compressor.cancel_session(session.id)
            self.store.reset_session()
            console.print("[green]Session reset[/green]")

        elif cmd == "/memory":
            with session.locked():
                summary = session.memory_summary
                index = session.last_summarized_index
            if not summary:
                console.print("[dim]No memory yet[/dim]")
            else:
                console.print(
                    Panel(
                        Markdown(summary),
                        title=f"[bold magenta]Memory (first {index} messages)[/bold magenta]",
                        border_style="magenta",
                    )
                )

        elif cmd == "/topic":
            console.print(f"[blue]Topic: {session.topic}[/blue]")

        elif cmd == "/stats":
            with session.locked():
                stats = session.stats
                count = len(session.messages)
            console.print(
                f"[blue]Messages:[/blue] {count}  "
                f"[blue]Tokens:[/blue] {stats.token_count}  "
                f"[blue]Words:[/blue] {stats.word_count}  "
                f"[blue]Chars:[/blue] {stats.char_count}"
            )

        else:
            console.print(f"[red]Unknown command: {cmd}[/red]")
            console.print("[dim]Type /help for available commands[/dim]")

        return True

    def _print_banner(self) -> None:
        """Print the startup banner."""
        console.print(
            Panel(
                Text.from_markup(
                    f"[bold cyan]{BANNER}[/bold cyan]\n"
                    f"  [dim]Model:[/dim] [bold]{self.model}[/bold]\n"
                    f"  [dim]Type /help for commands, /quit to exit[/dim]"
                ),
                border_style="cyan",
            )
        )
