"""Inspect or replay notification dead letters from the command line.

Replays republish the original event with the same message id and the
`x-retried-from-dlq` header, so the consumer resets the FAILED
notification before delivering again.
"""

import argparse
import asyncio
import json

from paynotify.common.config import settings
from paynotify.common.errors import DeadLetterMessageNotFound
from paynotify.services.runtime import open_runtime


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect or replay notification dead letters.")
    sub = parser.add_subparsers(dest="command", required=True)
    list_cmd = sub.add_parser("list", help="Show dead letters without removing them")
    list_cmd.add_argument("--max-messages", type=int, default=100)
    replay_cmd = sub.add_parser("replay", help="Replay one dead letter by message id")
    replay_cmd.add_argument("message_id")
    sub.add_parser("replay-all", help="Replay every dead letter present now")
    return parser


async def run(args: argparse.Namespace, service) -> int:
    """Execute one subcommand against a `DeadLetterService`; returns the exit code."""

    if args.command == "list":
        listing = await service.list_messages(args.max_messages)
        print(json.dumps(listing.model_dump(), indent=2))
        return 0
    if args.command == "replay":
        try:
            result = await service.replay_one(args.message_id)
        except DeadLetterMessageNotFound as exc:
            print(exc.message)
            return 1
        print(result.message)
        return 0
    result = await service.replay_all()
    print(f"Replayed {result.retried_count} messages")
    return 0


async def _main(args: argparse.Namespace) -> int:
    async with open_runtime(settings) as runtime:
        return await run(args, runtime.dead_letters)


def main() -> None:
    """CLI entrypoint for operator DLQ handling."""

    args = build_parser().parse_args()
    raise SystemExit(asyncio.run(_main(args)))


if __name__ == "__main__":
    main()
