"""CLI for driving the scheduling tools by hand against a real practice.

Each line is one tool turn: a tool name followed by its JSON arguments.  The
conversation state is carried from turn to turn exactly as the voice
platform would carry it.

Usage:
    uv run python -m dental_scheduler.main --practice-id acme
    uv run python -m dental_scheduler.main --practice-id acme --debug

Example session:
    > find_appointment_type {"user_request": "a cleaning"}
    > check_available_slots {"requested_date": "2025-07-15"}
    > book_appointment {"selected_time": "2:05 PM"}
    > book_appointment {"confirmed": true}
"""

from __future__ import annotations

import argparse
import json
import logging
import uuid
from typing import Any

from dotenv import load_dotenv

from dental_scheduler.config import PRACTICE_CONFIG_PATH
from dental_scheduler.practice import JsonPracticeRepository
from dental_scheduler.services.call_log import InMemoryCallLogStore
from dental_scheduler.services.debug_log import DebugLogStore
from dental_scheduler.services.nexhealth_client import get_nexhealth_client
from dental_scheduler.tools.scheduling import TOOL_NAMES, SchedulingContext, execute_tool

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("dental_scheduler").setLevel(logging.DEBUG if debug else logging.INFO)


def _parse_command(line: str) -> tuple[str, dict[str, Any]]:
    """Split ``tool_name {json}`` into the tool name and its arguments.

    Raises ``ValueError`` when the arguments are not a JSON object.
    """
    name, _, raw_args = line.strip().partition(" ")
    raw_args = raw_args.strip()
    if not raw_args:
        return name, {}
    try:
        arguments = json.loads(raw_args)
    except json.JSONDecodeError as e:
        raise ValueError(f"Arguments are not valid JSON: {e.msg}") from e
    if not isinstance(arguments, dict):
        raise ValueError("Arguments must be a JSON object")
    return name, arguments


def main():
    """Run the interactive tool loop."""
    parser = argparse.ArgumentParser(description="Dental Scheduler tool CLI")
    parser.add_argument("--practice-id", required=True, help="Practice to schedule against")
    parser.add_argument(
        "--practices", default=PRACTICE_CONFIG_PATH,
        help="Path to the practices JSON file",
    )
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    practice = JsonPracticeRepository(args.practices).get(args.practice_id)
    if practice is None:
        parser.error(f"Practice {args.practice_id!r} not found in {args.practices}")

    context = SchedulingContext(
        practice=practice,
        client=get_nexhealth_client(),
        call_logs=InMemoryCallLogStore(),
        debug_log=DebugLogStore(),
    )

    print("\n" + "=" * 60)
    print(f"  Dental Scheduler - {practice.name or practice.id}")
    print("=" * 60)
    print("  Enter: <tool_name> {json arguments}")
    print(f"  Tools: {', '.join(TOOL_NAMES)}")
    print("  Commands: 'state', 'new' for a new call, 'quit' to exit.")
    print("=" * 60 + "\n")

    call_id = str(uuid.uuid4())
    state: dict[str, Any] | None = None
    logger.info("Started new call: %s", call_id)

    while True:
        try:
            line = input("> ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not line:
            continue

        if line.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if line.lower() == "new":
            call_id, state = str(uuid.uuid4()), None
            print(f"\n>> New call started: {call_id[:8]}...\n")
            continue

        if line.lower() == "state":
            print(json.dumps(state, indent=2) if state else "(no state yet)")
            continue

        try:
            name, arguments = _parse_command(line)
        except ValueError as e:
            print(f"  {e}\n")
            continue

        try:
            outcome = execute_tool(name, arguments, state, context, call_id=call_id)
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break

        state = outcome.conversation_state
        print(json.dumps(outcome.result.to_payload(), indent=2) + "\n")


if __name__ == "__main__":
    main()
