"""Command-line interface for grocery-sync.

Provides subcommands for storing a session, browsing grocery lists,
checking off items and syncing a list with the pantry. Each command loads
configuration, builds an ApiClient + GroceryService and runs one coroutine.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TYPE_CHECKING

from pydantic import ValidationError

from grocery_sync.client import ApiClient
from grocery_sync.config import ConfigError, load_config
from grocery_sync.errors import ApiError
from grocery_sync.grocery_service import GroceryService
from grocery_sync.models import Credentials, GroceryList, GroceryListItem, ListStatus
from grocery_sync.session import Session
from grocery_sync.token_store import FileTokenStore, TokenStoreError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from grocery_sync.config import Config


logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Formatting
# ------------------------------------------------------------------


def format_item(item: GroceryListItem) -> str:
    """Format one grocery item as a checklist line.

    Args:
        item: Grocery item.

    Returns:
        Line such as ``[x] #12 milk: 500 ml``.
    """
    mark = "x" if item.checked else " "
    line = f"[{mark}] #{item.id} {item.ingredient_name}"
    if item.canonical_quantity_needed is not None:
        line += f": {item.canonical_quantity_needed:g} {item.canonical_unit}"
    elif item.quantity_as_entered is not None:
        unit = f" {item.unit_as_entered}" if item.unit_as_entered else ""
        line += f": {item.quantity_as_entered:g}{unit}"
    if item.is_purchased:
        line += " (purchased)"
    return line


def format_list(grocery_list: GroceryList) -> str:
    """Format a grocery list with its items.

    Args:
        grocery_list: Grocery list.

    Returns:
        Multi-line string.
    """
    title = grocery_list.title or f"List {grocery_list.id}"
    lines = [f"{title} ({grocery_list.status.value}, {len(grocery_list.items)} items)"]
    lines.extend(f"  {format_item(item)}" for item in grocery_list.items)
    return "\n".join(lines)


# ------------------------------------------------------------------
# Command runner
# ------------------------------------------------------------------


def _run(
    cfg: Config, action: Callable[[ApiClient, GroceryService], Awaitable[None]]
) -> int:
    """Run one async action against a fresh client.

    Args:
        cfg: Loaded configuration.
        action: Coroutine function receiving the client and service.

    Returns:
        Exit code (0 for success, 1 for an API failure).
    """

    async def main() -> None:
        async with ApiClient.from_config(cfg) as client:
            await action(client, GroceryService(client))

    try:
        asyncio.run(main())
    except ApiError as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error ({exc.kind.value}): {exc.message}", file=sys.stderr)
        return 1
    return 0


def _handle_login(cfg: Config, args: argparse.Namespace) -> int:
    """Handle the ``login`` subcommand: store a token pair.

    Args:
        cfg: Loaded configuration.
        args: Parsed arguments.

    Returns:
        Exit code.
    """
    try:
        credentials = Credentials(
            access_token=args.access_token, refresh_token=args.refresh_token
        )
    except ValidationError:
        print("Both --access-token and --refresh-token are required.", file=sys.stderr)
        return 1
    try:
        Session(FileTokenStore(cfg.token_store_path)).authenticate(credentials)
    except TokenStoreError as exc:
        print(f"Could not save session: {exc}", file=sys.stderr)
        return 1
    print("Session saved.")
    return 0


def _handle_logout(cfg: Config) -> int:
    """Handle the ``logout`` subcommand.

    Args:
        cfg: Loaded configuration.

    Returns:
        Exit code.
    """
    Session(FileTokenStore(cfg.token_store_path)).clear()
    print("Signed out.")
    return 0


def _handle_lists(cfg: Config, args: argparse.Namespace) -> int:
    """Handle the ``lists`` subcommand.

    Args:
        cfg: Loaded configuration.
        args: Parsed arguments.

    Returns:
        Exit code.
    """
    status = ListStatus(args.status) if args.status else None

    async def action(_client: ApiClient, service: GroceryService) -> None:
        if args.family is not None:
            lists = await service.get_family_lists(args.family, status=status)
        else:
            lists = await service.get_personal_lists(status=status)
        if not lists:
            print("No grocery lists.")
        for grocery_list in lists:
            title = grocery_list.title or "(untitled)"
            print(f"#{grocery_list.id} {title} [{grocery_list.status.value}]")

    return _run(cfg, action)


def _handle_show(cfg: Config, args: argparse.Namespace) -> int:
    """Handle the ``show`` subcommand.

    Args:
        cfg: Loaded configuration.
        args: Parsed arguments.

    Returns:
        Exit code.
    """

    async def action(_client: ApiClient, service: GroceryService) -> None:
        print(format_list(await service.get_list(args.list_id)))

    return _run(cfg, action)


def _handle_check(cfg: Config, args: argparse.Namespace) -> int:
    """Handle the ``check`` subcommand: toggle an item's checked flag.

    Args:
        cfg: Loaded configuration.
        args: Parsed arguments.

    Returns:
        Exit code.
    """

    async def action(_client: ApiClient, service: GroceryService) -> None:
        item = await service.toggle_item(args.list_id, args.item_id)
        print(format_item(item))

    return _run(cfg, action)


def _handle_sync(cfg: Config, args: argparse.Namespace) -> int:
    """Handle the ``sync`` subcommand.

    Args:
        cfg: Loaded configuration.
        args: Parsed arguments.

    Returns:
        Exit code.
    """

    async def action(_client: ApiClient, service: GroceryService) -> None:
        result = await service.sync_with_pantry(args.list_id, args.user_id)
        print(result.message)
        for item in result.remaining_items:
            print(f"  {format_item(item)}")

    return _run(cfg, action)


# ------------------------------------------------------------------
# Argument parser
# ------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with all subcommands.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="grocery-sync",
        description="grocery-sync: grocery list and pantry client.",
    )
    subparsers = parser.add_subparsers(dest="command")

    login_parser = subparsers.add_parser("login", help="Store a session token pair.")
    login_parser.add_argument("--access-token", required=True, help="Access token.")
    login_parser.add_argument("--refresh-token", required=True, help="Refresh token.")

    subparsers.add_parser("logout", help="Forget the stored session.")

    lists_parser = subparsers.add_parser("lists", help="Show grocery lists.")
    lists_parser.add_argument(
        "--family",
        type=int,
        default=None,
        help="Family id (default: your personal lists).",
    )
    lists_parser.add_argument(
        "--status",
        default=None,
        choices=[s.value for s in ListStatus],
        help="Only lists with this status.",
    )

    show_parser = subparsers.add_parser("show", help="Show one grocery list.")
    show_parser.add_argument("list_id", type=int, help="List id.")

    check_parser = subparsers.add_parser("check", help="Toggle an item's checkbox.")
    check_parser.add_argument("list_id", type=int, help="List id.")
    check_parser.add_argument("item_id", type=int, help="Item id.")

    sync_parser = subparsers.add_parser("sync", help="Sync a list with the pantry.")
    sync_parser.add_argument("list_id", type=int, help="List id.")
    sync_parser.add_argument(
        "--user-id", type=int, required=True, help="Your user id (must own the list)."
    )

    return parser


# ------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Run the CLI application.

    Args:
        argv: Optional argument list (defaults to sys.argv[1:]).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    exit_code = _dispatch(args)
    sys.exit(exit_code)


def _dispatch(args: argparse.Namespace) -> int:
    """Load configuration and dispatch to the matching handler.

    Args:
        args: Parsed command-line arguments.

    Returns:
        Exit code from the handler.
    """
    try:
        cfg = load_config()
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1
    logging.basicConfig(level=cfg.log_level, format="%(levelname)s: %(message)s")

    command: str = args.command
    if command == "login":
        return _handle_login(cfg, args)
    if command == "logout":
        return _handle_logout(cfg)
    if command == "lists":
        return _handle_lists(cfg, args)
    if command == "show":
        return _handle_show(cfg, args)
    if command == "check":
        return _handle_check(cfg, args)
    if command == "sync":
        return _handle_sync(cfg, args)
    return 1  # pragma: no cover
