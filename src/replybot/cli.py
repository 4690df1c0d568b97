import argparse
import json
from typing import Any

from dotenv import load_dotenv

from .automation.config import load_config
from .automation.runner import build_storage, run_forever
from .automation.state import empty_stats
from .errors import AuthError
from .graph_client import GraphClient


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def cmd_run(_: argparse.Namespace) -> None:
    """Poll for new comments and reply until stopped (Ctrl-C keeps the saved running flag)."""
    run_forever(load_config())


def cmd_stop(_: argparse.Namespace) -> None:
    """Stop a running ``run`` process and keep the next ``run`` from resuming."""
    storage = build_storage(load_config())
    storage.request_stop()
    saved = storage.load_automation_state() or {"stats": empty_stats()}
    saved["running"] = False
    saved.pop("saved_at", None)
    storage.save_automation_state(saved)
    storage.append_log({"type": "info", "message": "Automation stopped from the command line"})
    print_json({"running": False})


def cmd_status(_: argparse.Namespace) -> None:
    storage = build_storage(load_config())
    saved = storage.load_automation_state() or {}
    stats = saved.get("stats") or empty_stats()
    print_json(
        {
            "running": bool(saved.get("running")),
            "last_check_time": saved.get("last_check_time"),
            "saved_at": saved.get("saved_at"),
            "stats": stats,
            "error_count": stats.get("error_count", 0),
            "processed_count": storage.processed_count(),
        }
    )


def cmd_logs(args: argparse.Namespace) -> None:
    storage = build_storage(load_config())
    print_json(storage.recent_logs(limit=args.limit, entry_type=args.type))


def cmd_processed(args: argparse.Namespace) -> None:
    storage = build_storage(load_config())
    print_json(storage.recent_processed(limit=args.limit))


def cmd_reset_stats(_: argparse.Namespace) -> None:
    """Zero the counters; a running ``run`` process picks up the request within a second."""
    storage = build_storage(load_config())
    saved = storage.load_automation_state() or {"running": False}
    if saved.get("running"):
        storage.request_stats_reset()
    saved["stats"] = empty_stats()
    saved.pop("saved_at", None)
    storage.save_automation_state(saved)
    storage.append_log({"type": "info", "message": "Statistics reset"})
    print_json(saved["stats"])


def cmd_me(_: argparse.Namespace) -> None:
    """Show the connected Instagram account."""
    client = GraphClient()
    print_json(client.get_account_info())


def cmd_posts(args: argparse.Namespace) -> None:
    """List recent posts, with the ids used by REPLYBOT_SELECTED_POST_IDS."""
    client = GraphClient()
    posts = client.get_account_posts(limit=args.limit)
    print_json(
        [
            {
                "id": p.id,
                "type": p.type,
                "timestamp": p.timestamp.isoformat() if p.timestamp else None,
                "comments": p.comment_count,
                "caption": p.caption[:80],
                "permalink": p.permalink,
            }
            for p in posts
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Instagram comment reply automation.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_run = subparsers.add_parser("run", help="Start or resume the automation and block")
    p_run.set_defaults(func=cmd_run)

    p_stop = subparsers.add_parser("stop", help="Mark the automation stopped")
    p_stop.set_defaults(func=cmd_stop)

    p_status = subparsers.add_parser("status", help="Show saved automation state")
    p_status.set_defaults(func=cmd_status)

    p_logs = subparsers.add_parser("logs", help="Show recent activity log entries")
    p_logs.add_argument("--limit", type=int, default=50, help="Number of entries to show")
    p_logs.add_argument(
        "--type",
        choices=["comment_detected", "reply_generated", "reply_posted", "error", "info"],
        help="Only show entries of this type",
    )
    p_logs.set_defaults(func=cmd_logs)

    p_processed = subparsers.add_parser("processed", help="Show recently processed comments")
    p_processed.add_argument("--limit", type=int, default=20, help="Number of comments to show")
    p_processed.set_defaults(func=cmd_processed)

    p_reset = subparsers.add_parser("reset-stats", help="Zero the automation counters")
    p_reset.set_defaults(func=cmd_reset_stats)

    # me
    p_me = subparsers.add_parser("me", help="Show the connected account")
    p_me.set_defaults(func=cmd_me)

    # posts
    p_posts = subparsers.add_parser("posts", help="List recent posts")
    p_posts.add_argument("--limit", type=int, default=10, help="Number of posts to list")
    p_posts.set_defaults(func=cmd_posts)

    return parser


def main() -> None:
    load_dotenv()
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)
    except AuthError as e:
        raise SystemExit(str(e))
    except Exception as e:
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
