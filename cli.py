"""
cli.py — Interactive inventory chat

  exit / quit   leave (exit code 0)
  reset         forget the conversation and the search thread
  anything else is sent to the agent; failures are printed, never fatal
"""

import sys
from typing import Callable

from telemetry import log

BANNER = "Inventory assistant. Type 'reset' to start over, 'exit' to quit."


def repl(agent, read: Callable[[str], str] = input, write: Callable[[str], None] = print) -> int:
    write(BANNER)
    while True:
        try:
            line = read("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            write("")
            return 0

        if not line:
            continue
        if line.lower() in ("exit", "quit"):
            return 0
        if line.lower() == "reset":
            agent.reset()
            write("Conversation reset.")
            continue

        try:
            write(f"Assistant: {agent.chat(line)}")
        except Exception as e:
            log("CLI", f"Turn failed: {type(e).__name__}: {e}")
            write(f"Error: {e}")


def main() -> int:
    from agent import InventoryAgent

    agent = InventoryAgent()
    try:
        return repl(agent)
    finally:
        agent.close()


if __name__ == "__main__":
    sys.exit(main())
