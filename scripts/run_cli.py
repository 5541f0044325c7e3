"""Interactive CLI for talking to the vault agent without the web UI.

Usage:
    python scripts/run_cli.py

Commands:
    /confirm                 apply the pending edit (or approve the waiting action)
    /reject                  discard the pending edit
    /remember label: text    append an entry to the memory file
    /active path             set (or, without a path, clear) the active file
    /new                     start a new chat
    /save                    save the current chat
"""

import asyncio
import logging
import os
import sys

# Ensure the project root is on the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent import config  # noqa: E402
from agent.errors import AgentError  # noqa: E402
from agent.guardrails import describe_pending_edit  # noqa: E402
from agent.session import Assistant, default_assistant  # noqa: E402
from agent.state import AgentCallbacks  # noqa: E402


def _print_delta(delta: str, _streamed: str) -> None:
    print(delta, end="", flush=True)


def _handle_command(assistant: Assistant, command: str) -> None:
    name, _, rest = command.partition(" ")
    if name == "/confirm":
        if assistant.pending_edit is not None:
            edit = assistant.confirm_pending_edit()
            print(f"  \033[1;32m✅ Applied edit to {edit.path}\033[0m")
        else:
            assistant.confirm()
            print("  \033[1;32m✅ Confirmed\033[0m")
    elif name == "/reject":
        assistant.reject_pending_edit()
        print("  Edit discarded.")
    elif name == "/remember":
        label, _, text = rest.partition(":")
        if not text.strip():
            print("  Usage: /remember label: text")
            return
        assistant.remember(label.strip(), text.strip())
        print("  Saved to memory.")
    elif name == "/active":
        assistant.session.active_file_path = rest.strip() or None
        print(f"  Active file: {assistant.session.active_file_path or '(none)'}")
    elif name == "/new":
        session = assistant.new_chat()
        print(f"  Started {session.chat_id}")
    elif name == "/save":
        assistant.save()
        print(f"  Saved {assistant.session.chat_id}")
    else:
        print(f"  Unknown command: {name}")


async def main():
    """Run an interactive chat loop in the terminal."""
    print("=" * 60)
    print("  ⚡ Vault Agent — CLI Mode")
    print("  Type 'quit' or 'exit' to stop.")
    print("=" * 60)
    print()

    assistant = default_assistant(
        on_activity=lambda message: print(f"\n  \033[1;33m🔧 {message}\033[0m")
    )
    callbacks = AgentCallbacks(
        on_turn_start=lambda turn, _history: print(f"\033[1;35mAgent[{turn + 1}]:\033[0m ", end=""),
        on_tool_error=lambda error: print(f"\n  \033[1;31m✖ {error}\033[0m"),
    )

    while True:
        try:
            user_input = input("\033[1;36mYou:\033[0m ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        if not user_input:
            continue
        if user_input.lower() in ("quit", "exit"):
            print("Goodbye!")
            break

        print()

        try:
            if user_input.startswith("/"):
                _handle_command(assistant, user_input)
                continue

            await assistant.send(user_input, on_delta=_print_delta, callbacks=callbacks)
            print()
            assistant.save()

            pending = assistant.pending_edit
            if pending is not None:
                print(describe_pending_edit(pending))
                print("  Type /confirm to apply or /reject to discard.")

        except AgentError as e:
            print(f"\033[1;31mError:\033[0m {e}")

        print()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    asyncio.run(main())
