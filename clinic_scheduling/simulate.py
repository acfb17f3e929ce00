"""Text-mode call simulator.

Drives one call through the dialogue driver from the terminal, or from a
file with one caller utterance per line. Uses IntakeQ / Availity when
their keys are set in the environment or .env, otherwise the demo
services (try phone 904-123-4567, DOB 03/15/1985).

Usage::

    python -m clinic_scheduling.simulate
    python -m clinic_scheduling.simulate --script calls/book_follow_up.txt --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import secrets
import sys

from dotenv import load_dotenv

load_dotenv()

from clinic_scheduling.config import configure_logging, settings  # noqa: E402
from clinic_scheduling.driver import build_driver  # noqa: E402
from clinic_scheduling.models.conversation import TurnResponse  # noqa: E402


def _show(response: TurnResponse, as_json: bool) -> None:
    if as_json:
        print(json.dumps(response.to_payload(), indent=2))
        return
    print(f"{settings.agent_name}: {response.message}")
    for option in response.options or []:
        print(f"    - {option}")
    if response.requires_transfer:
        print("    [transfer to front desk requested]")


def _read_script(path: str) -> list[str]:
    with open(path) as f:
        return [line.strip() for line in f if line.strip() and not line.startswith("#")]


async def run(call_id: str, utterances: list[str] | None, as_json: bool) -> int:
    driver = build_driver(settings)
    _show(driver.start_call(call_id), as_json)

    turns = 0
    try:
        while True:
            if utterances is not None:
                if turns >= len(utterances):
                    break
                text = utterances[turns]
                print(f"Caller: {text}")
            else:
                try:
                    text = input("Caller: ").strip()
                except EOFError:
                    break
                if not text:
                    continue
                if text.lower() in ("quit", "exit", "hang up"):
                    break
            turns += 1
            _show(await driver.process_message(call_id, text), as_json)
    finally:
        snapshot = driver.get_snapshot(call_id)
        await driver.end_call(call_id)

    if snapshot:
        print(
            f"\n# {turns} turns, final step: {snapshot['step']}, "
            f"appointment: {snapshot.get('appointmentId') or '-'}",
            file=sys.stderr,
        )
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Simulate a clinic scheduling phone call in the terminal",
        prog="python -m clinic_scheduling.simulate",
    )
    parser.add_argument("--script", help="File with one caller utterance per line")
    parser.add_argument("--call-id", help="Call identifier (default: random)")
    parser.add_argument("--json", action="store_true", help="Print full response payloads")
    parser.add_argument("--log-level", help="Override LOG_LEVEL (e.g. DEBUG)")

    args = parser.parse_args()

    configure_logging(args.log_level or ("WARNING" if not settings.debug else None))
    for warning in settings.validate_startup():
        print(f"warning: {warning}", file=sys.stderr)

    utterances = _read_script(args.script) if args.script else None
    call_id = args.call_id or f"sim_{secrets.token_hex(4)}"
    sys.exit(asyncio.run(run(call_id, utterances, args.json)))


if __name__ == "__main__":
    main()
