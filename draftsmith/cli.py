"""Terminal rendering for interactive continuation sessions."""

import asyncio
import os
import sys
from pathlib import Path
from typing import Any

from draftsmith.config import get_config
from draftsmith.exceptions import describe_error
from draftsmith.logging import get_logger
from draftsmith.streaming import SimulatedStream

log = get_logger(__name__)

_TOOL_STATUS_MARK = {"success": "ok", "error": "failed", "calling": "..."}


class TerminalUI:
    """Plain-text terminal UI."""

    def __init__(self):
        self.config = get_config()
        self._readline = None
        self._history_file = Path("~/.draftsmith/history").expanduser()
        self._special_commands = [
            "/help",
            "/confirm",
            "/regenerate",
            "/discard",
            "/chapter",
            "/history",
            "/new",
            "/exit",
            "/quit",
        ]
        self._active_stream: SimulatedStream | None = None
        self._setup_readline()

    def _setup_readline(self) -> None:
        """Set up line editing, history, and command completion."""
        try:
            import readline
        except ImportError:
            return

        self._readline = readline
        try:
            self._history_file.parent.mkdir(parents=True, exist_ok=True)
            if self._history_file.exists():
                readline.read_history_file(str(self._history_file))
        except OSError:
            pass
        readline.set_completer(self._complete_special_command)
        readline.parse_and_bind("tab: complete")

    def save_history(self) -> None:
        if not self._readline:
            return
        try:
            self._readline.write_history_file(str(self._history_file))
        except OSError:
            pass

    def _complete_special_command(self, text: str, state: int) -> str | None:
        matches = [cmd for cmd in self._special_commands if cmd.startswith(text)]
        return matches[state] if state < len(matches) else None

    def print_welcome(self, project_path: Path, chapter_id: str | None) -> None:
        print("=== Draftsmith ===")
        print(f"Project: {project_path}")
        print(f"Chapter: {chapter_id or '(none selected)'}")
        print("Type your message, '/help' for commands, or '/exit' to quit.\n")

    def print_help(self) -> None:
        print("""
Commands:
  /help               - Show this help message
  /confirm            - Append the pending draft to the chapter
  /regenerate         - Drop the pending draft and write a new one
  /discard            - Drop the pending draft
  /chapter <id>       - Select the chapter to continue
  /history            - Show conversation history
  /new                - Start a new session
  /exit, /quit        - Exit

Press ESC while the assistant is working to stop it.
""")

    def print_message(self, role: str, content: str) -> None:
        print(f"[{role.upper()}] {content}")

    def print_error(self, error: BaseException | str) -> None:
        description = describe_error(error)
        if description.category == "cancelled":
            print(description.message)
            return
        print(f"Error: {description.message}")
        if description.category == "configuration":
            print("Run 'draftsmith models' after adding a provider to draftsmith.yaml.")
        if description.raw and description.raw != description.message:
            log.debug("Raw error", error=description.raw)

    def print_warning(self, warning: str) -> None:
        print(f"Warning: {warning}")

    def print_success(self, message: str) -> None:
        print(f"OK: {message}")

    def print_tool_calls(self, records: list[dict[str, Any]]) -> None:
        """Render the "what the agent did" trace."""
        if not self.config.ui.show_tool_calls:
            return
        for record in records:
            status = str(record.get("status", "calling"))
            mark = _TOOL_STATUS_MARK.get(status, status)
            duration = record.get("duration")
            timing = f" {duration}ms" if duration is not None else ""
            line = f"  [TOOL] {record.get('name')} {mark}{timing}"
            if status == "error" and record.get("error"):
                line += f": {record['error']}"
            print(line)

    def print_draft_actions(self, word_count: int | None) -> None:
        count = f" ({word_count} chars)" if word_count is not None else ""
        print(f"Draft ready{count}. /confirm to append, /regenerate for a new one, /discard to drop it.")

    def print_history(self, messages: list[dict[str, Any]]) -> None:
        print("\n=== Conversation History ===")
        for msg in messages:
            content = str(msg.get("content") or "")
            if len(content) > 200:
                content = content[:200] + "..."
            meta = msg.get("metadata") or {}
            tag = ""
            if meta.get("applied") is False:
                tag = " (draft)"
            elif meta.get("applied") is True:
                tag = " (applied)"
            elif meta.get("compaction"):
                tag = " (summary)"
            print(f"[{str(msg.get('role', '')).upper()}]{tag} {content}")
        print()

    async def stream_assistant(self, text: str) -> None:
        """Show a reply, paced by simulated streaming when enabled."""
        if not self.config.ui.simulated_streaming or not sys.stdout.isatty():
            self.print_message("assistant", text)
            return
        print("[ASSISTANT] ", end="", flush=True)
        self._active_stream = SimulatedStream(text)
        try:
            await self._active_stream.render(lambda delta: print(delta, end="", flush=True))
        finally:
            self._active_stream = None
            print()

    def stop_stream(self) -> None:
        if self._active_stream is not None:
            self._active_stream.stop()

    def can_capture_escape(self) -> bool:
        return os.name == "posix" and sys.stdin.isatty()

    async def wait_for_escape(self) -> bool:
        """Wait asynchronously for an ESC key press."""
        if not self.can_capture_escape():
            await asyncio.Event().wait()
            return False

        import termios
        import tty

        fd = sys.stdin.fileno()
        loop = asyncio.get_running_loop()
        old = termios.tcgetattr(fd)
        fut: asyncio.Future[bool] = loop.create_future()

        def _on_stdin_ready() -> None:
            try:
                ch = os.read(fd, 1)
            except OSError:
                ch = b""
            if ch == b"\x1b" and not fut.done():
                fut.set_result(True)

        try:
            tty.setcbreak(fd)
            loop.add_reader(fd, _on_stdin_ready)
            return await fut
        except asyncio.CancelledError:
            # Normal path when the turn finishes before ESC is pressed.
            return False
        finally:
            loop.remove_reader(fd)
            termios.tcsetattr(fd, termios.TCSADRAIN, old)

    def prompt(self, prompt_text: str = "> ") -> str:
        value = input(prompt_text)
        if self._readline and value.strip():
            self._readline.add_history(value)
        return value

    def handle_special_command(self, cmd: str) -> tuple[str, str] | None:
        """Map input to ``(command, argument)``; plain text becomes ``("SEND", text)``."""
        cmd = cmd.strip()
        if not cmd.startswith("/"):
            return ("SEND", cmd)

        parts = cmd.split(None, 1)
        command = parts[0].lower()
        args = parts[1].strip() if len(parts) > 1 else ""

        if command in ("/help", "/h", "/?"):
            self.print_help()
            return None
        if command == "/confirm":
            return ("CONFIRM", args)
        if command == "/regenerate":
            return ("REGENERATE", args)
        if command == "/discard":
            return ("DISCARD", args)
        if command == "/chapter":
            if not args:
                self.print_error("Usage: /chapter <id>")
                return None
            return ("CHAPTER", args)
        if command == "/history":
            return ("HISTORY", "")
        if command == "/new":
            return ("NEW", args)
        if command in ("/exit", "/quit", "/q"):
            return ("EXIT", "")
        self.print_error(f"Unknown command: {command}")
        return None


_ui: TerminalUI | None = None


def get_ui() -> TerminalUI:
    """Get the global UI instance."""
    global _ui
    if _ui is None:
        _ui = TerminalUI()
    return _ui


def set_ui(ui: TerminalUI) -> None:
    """Set the global UI instance."""
    global _ui
    _ui = ui
