import argparse
import json
from collections.abc import Sequence
from datetime import datetime, timezone

from dateutil import parser as date_parser
from loguru import logger

from app.db import init_db, session_scope
from app.errors import GroupNotFoundError
from app.repositories import GroupRepository


def _parse_instant(value: str | None) -> int:
    """Epoch seconds from an integer or an ISO-8601 string; defaults to now."""

    if value is None:
        return int(datetime.now(timezone.utc).timestamp())
    if value.strip().isdigit():
        return int(value)
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage groups and their membership intervals")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a group")
    create.add_argument("--id", dest="group_id", required=True)
    create.add_argument("--slug", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--bio", default=None)

    join = commands.add_parser("join", help="Open a membership interval")
    join.add_argument("group", help="Group slug or id")
    join.add_argument("subject", help="Member address")
    join.add_argument("--at", default=None, help="Join instant (epoch seconds or ISO-8601; default now)")

    leave = commands.add_parser("leave", help="Close the member's open interval")
    leave.add_argument("group", help="Group slug or id")
    leave.add_argument("subject", help="Member address")
    leave.add_argument("--at", default=None, help="Leave instant (epoch seconds or ISO-8601; default now)")

    show = commands.add_parser("show", help="Print a group's membership intervals as JSON")
    show.add_argument("group", help="Group slug or id")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    init_db()

    try:
        with session_scope() as session:
            groups = GroupRepository(session)
            if args.command == "create":
                record = groups.create_group(
                    group_id=args.group_id, slug=args.slug, name=args.name, bio=args.bio
                )
                logger.info("Created group {} ({})", record.slug, record.group_id)
                return

            group = groups.get_group(args.group)
            if args.command == "join":
                interval = groups.add_interval(
                    group.group_id, args.subject, joined_at=_parse_instant(args.at)
                )
                logger.info("{} joined {} at {}", interval.subject, group.slug, interval.joined_at)
            elif args.command == "leave":
                left_at = _parse_instant(args.at)
                if not groups.close_interval(group.group_id, args.subject, left_at=left_at):
                    logger.warning("{} has no open interval in {}", args.subject, group.slug)
                else:
                    logger.info("{} left {} at {}", args.subject.lower(), group.slug, left_at)
            else:
                intervals = groups.list_intervals([group.group_id])
                print(
                    json.dumps(
                        [
                            {"subject": item.subject, "joined_at": item.joined_at, "left_at": item.left_at}
                            for item in intervals
                        ],
                        indent=2,
                    )
                )
    except (GroupNotFoundError, ValueError) as exc:
        logger.error("{}", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
