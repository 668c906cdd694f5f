#!/usr/bin/env python3
"""
Terminal chat against the copilot API, or the offline responder when
COPILOT_API_URL is not set
"""
import argparse
import asyncio
import sys
from typing import List, Optional

from field_copilot.client.api import CopilotApiClient
from field_copilot.client.config import ClientSettings
from field_copilot.client.conversation import (
    ConversationEvent,
    ConversationStateMachine,
    DisplayMessage,
    FAILURE_MESSAGE,
)

QUIT_COMMANDS = {"/quit", "/exit"}


def print_sources(message: DisplayMessage):
    for source in message.sources:
        stamp = f"[{source.date}] " if source.date else ""
        print(f"   📚 {stamp}{source.snippet}")


def print_history(messages: List[DisplayMessage]):
    for message in messages:
        speaker = message.sender_name or message.role
        print(f"{speaker}: {message.content}")
        print_sources(message)


class StreamPrinter:
    """Echo deltas as they arrive and remember whether any were printed"""

    def __init__(self):
        self.printed = 0

    def __call__(self, event: ConversationEvent):
        if event.kind == "delta":
            self.printed += 1
            print(event.data, end="", flush=True)


async def read_line(prompt: str) -> Optional[str]:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def chat(job_id: str, streaming: bool, settings: ClientSettings):
    client = CopilotApiClient.from_settings(settings)
    machine = ConversationStateMachine(
        client,
        job_id,
        user_id=settings.USER_ID,
        user_name="You",
        streaming=streaming
    )
    printer = StreamPrinter()
    machine.subscribe(printer)

    mode = settings.API_URL or "offline mock"
    print(f"🔗 Copilot: {mode}")
    print(f"🛠  Job: {job_id}  (type /quit to leave)")
    print("=" * 60)

    try:
        print_history(await machine.restore())

        while True:
            line = await read_line("\n❓ ")
            if line is None or line.strip() in QUIT_COMMANDS:
                break
            if not line.strip():
                continue

            print("🤖 ", end="", flush=True)
            printer.printed = 0
            final = await machine.send_message(line)
            if final is None:
                continue
            if final.content == FAILURE_MESSAGE and printer.printed:
                print()
            if not printer.printed or final.content == FAILURE_MESSAGE:
                print(final.content, end="")
            print()
            print_sources(final)
            if machine.follow_ups:
                print(f"   💡 Try: {' | '.join(machine.follow_ups)}")
    finally:
        await client.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with the job copilot")
    parser.add_argument("job_id", help="Job to ask about")
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for complete answers instead of streaming"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        asyncio.run(chat(args.job_id, streaming=not args.no_stream, settings=ClientSettings()))
    except KeyboardInterrupt:
        print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
