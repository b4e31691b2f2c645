#!/usr/bin/env python3
"""Interactive chat CLI for the conversation driver service."""

import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from converse_driver.services.weather import DEFAULT_STATIONS

DEFAULT_BASE_URL = "http://localhost:8000"


class ChatCLI:
    """Interactive chat interface for the conversation driver service."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.conversation_id: str | None = None
        self.console = Console()
        self.client = httpx.Client(timeout=120.0)

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]Converse Driver - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with the assistant.\n"
                "Commands: /help, /history, /clear, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]Connected to conversation service[/green]\n")
        self._show_weather_stations()

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")
                command = user_input.strip().lower()

                if command in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif command == "/help":
                    self._show_help()
                    continue
                elif command == "/history":
                    self._show_history()
                    continue
                elif command == "/clear":
                    self._clear_conversation()
                    continue
                elif command == "":
                    continue

                response = self._send_message(user_input)
                if response:
                    self._display_response(response)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        """Test connection to the service."""
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _send_message(self, message: str) -> dict | None:
        """Send a message and return the decoded response body."""
        payload = {"message": message}
        if self.conversation_id:
            payload["conversation_id"] = self.conversation_id

        try:
            with self.console.status("[dim]Thinking...[/dim]"):
                response = self.client.post(f"{self.base_url}/conversation", json=payload)
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return None

        data = response.json()
        if response.status_code == 200:
            self.conversation_id = data.get("conversation_id")
            return data

        retry_hint = " (retryable)" if data.get("retryable") else ""
        detail = data.get("detail", response.text)
        self.console.print(f"[red]API Error {response.status_code}{retry_hint}: {detail}[/red]")
        return None

    def _display_response(self, response: dict) -> None:
        """Display the assistant's answer with its turn metadata."""
        assistant_text = response.get("response", "No response")
        round_trips = response.get("round_trips", 0)

        self.console.print(
            Panel(
                Markdown(assistant_text),
                title="[bold green]Assistant[/bold green]",
                subtitle=f"[dim]{round_trips} tool round-trips[/dim]",
                border_style="green",
                padding=(1, 2),
            )
        )

    def _show_history(self) -> None:
        """Print the committed messages of the current conversation."""
        if not self.conversation_id:
            self.console.print("[yellow]No conversation yet[/yellow]")
            return

        response = self.client.get(f"{self.base_url}/conversation/{self.conversation_id}/messages")
        if response.status_code != 200:
            self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
            return

        table = Table(title=f"Conversation {self.conversation_id}")
        table.add_column("Role", style="cyan")
        table.add_column("Content")
        for message in response.json()["messages"]:
            parts = []
            for block in message["content"]:
                if block["type"] == "text":
                    parts.append(block["text"])
                elif block["type"] == "tool_use":
                    parts.append(f"[magenta]→ {block['name']}({block['input']})[/magenta]")
                elif block["type"] == "tool_result":
                    style = "red" if block["is_error"] else "blue"
                    parts.append(f"[{style}]← {block['content']}[/{style}]")
            table.add_row(message["role"], "\n".join(parts))

        self.console.print(table)

    def _clear_conversation(self) -> None:
        """Discard the server-side conversation and start over."""
        if self.conversation_id:
            self.client.delete(f"{self.base_url}/conversation/{self.conversation_id}")
        self.conversation_id = None
        self.console.print("[yellow]Conversation cleared[/yellow]")

    def _show_weather_stations(self) -> None:
        """Show the locations the built-in weather tool knows about."""
        station_list = "\n".join(
            f"• {station.name} ({station.lat}, {station.lon})" for station in DEFAULT_STATIONS
        )

        self.console.print(
            Panel(
                f"[bold]Weather stations:[/bold]\n\n{station_list}\n\n"
                "[dim]Ask about the weather near any of these[/dim]",
                title="[yellow]Available Test Data[/yellow]",
                border_style="yellow",
            )
        )

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /history - Show the messages stored for this conversation
• /clear - Discard the conversation and start over
• /quit or /exit - Exit the chat

[bold]Example Conversation:[/bold]
1. "What's the weather in Portland?"
2. "How about at 47.61, -122.33?"
3. "Which of the two is warmer?"
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_BASE_URL

    chat = ChatCLI(base_url)
    chat.start()


if __name__ == "__main__":
    main()
