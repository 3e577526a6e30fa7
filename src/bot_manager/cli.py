from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .constants import ROLES, ROLE_USER
from .errors import BotManagerError
from .logging_setup import configure_logging
from .storage.container import Container


def _config(args: argparse.Namespace) -> AppConfig:
    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else None
    return load_config(data_dir)


def _emit(payload: object) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


def _server(args: argparse.Namespace) -> int:
    import uvicorn

    from .server import create_app

    config = _config(args)
    configure_logging(config.log_level)
    app = create_app(config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=config.log_level.lower())
    return 0


def _user_list(args: argparse.Namespace) -> int:
    container = Container(_config(args))
    try:
        _emit({"users": [user.to_summary() for user in container.users.list_all()]})
    finally:
        container.close()
    return 0


def _user_create(args: argparse.Namespace) -> int:
    container = Container(_config(args))
    try:
        user = container.users.create(args.username, args.password, args.role)
        _emit({"user": user.to_summary()})
    finally:
        container.close()
    return 0


def _user_delete(args: argparse.Namespace) -> int:
    container = Container(_config(args))
    try:
        user = container.users.delete(args.username)
        _emit({"deleted": user.username, "orphaned_tasks": list(user.tasks)})
    finally:
        container.close()
    return 0


def _task_list(args: argparse.Namespace) -> int:
    container = Container(_config(args))
    try:
        tasks = container.tasks.list()
        if args.owner:
            tasks = [task for task in tasks if task.owner == args.owner]
        _emit(
            {
                "tasks": [
                    {
                        "id": task.id,
                        "name": task.name,
                        "owner": task.owner,
                        "status": task.status,
                        "created": task.created,
                        "logs": len(task.logs),
                    }
                    for task in tasks
                ]
            }
        )
    finally:
        container.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bot Manager server and administration CLI")
    parser.add_argument("--data-dir", default=None, help="State directory (default: $BOT_MANAGER_DATA_DIR or ./data)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server = subparsers.add_parser("server", help="Start the web server")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=3000, type=int)
    server.set_defaults(func=_server)

    user = subparsers.add_parser("user", help="Manage accounts")
    user_sub = user.add_subparsers(dest="user_cmd", required=True)
    ulist = user_sub.add_parser("list", help="List accounts")
    ulist.set_defaults(func=_user_list)
    ucreate = user_sub.add_parser("create", help="Create an account")
    ucreate.add_argument("username")
    ucreate.add_argument("password")
    ucreate.add_argument("--role", default=ROLE_USER, choices=list(ROLES))
    ucreate.set_defaults(func=_user_create)
    udelete = user_sub.add_parser("delete", help="Delete an account (its tasks are kept)")
    udelete.add_argument("username")
    udelete.set_defaults(func=_user_delete)

    task = subparsers.add_parser("task", help="Inspect tasks")
    task_sub = task.add_subparsers(dest="task_cmd", required=True)
    tlist = task_sub.add_parser("list", help="List tasks")
    tlist.add_argument("--owner", default=None)
    tlist.set_defaults(func=_task_list)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except BotManagerError as exc:
        sys.stderr.write(f"{exc.message}\n")
        return 1


def entrypoint() -> None:
    sys.exit(main())
