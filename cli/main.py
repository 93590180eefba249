#!/usr/bin/env python3
"""
orgvideo CLI - operator commands that run directly against the database.

Meant for cron jobs and first-time setup:

    python -m cli.main publish-scheduled
    python -m cli.main cleanup-history
    python -m cli.main create-user admin admin@example.com --role ADMIN
    python -m cli.main settings seed
"""

import argparse
import asyncio
import getpass
import json
import sys
from datetime import datetime, timezone

import sqlalchemy as sa
from rich.console import Console
from rich.table import Table

from api.auth import ALL_ROLES, hash_password
from api.database import configure_database, database, users
from api.errors import is_unique_violation, truncate_error
from api.scheduled_publisher import run_scheduled_publishing
from api.settings_service import SettingsValidationError, get_settings_service
from api.view_history_cleanup import get_cleanup_status, run_scheduled_cleanup
from config import ERROR_DETAIL_MAX_LENGTH

console = Console()

MIN_PASSWORD_LENGTH = 8


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def run_with_database(func, *args, **kwargs):
    """Connect, run an async function, and always disconnect."""

    async def runner():
        await database.connect()
        await configure_database()
        try:
            return await func(*args, **kwargs)
        finally:
            await database.disconnect()

    return asyncio.run(runner())


def print_json(data) -> None:
    console.print_json(json.dumps(data, ensure_ascii=False, default=str))


def cmd_publish_scheduled(args):
    """Publish and unpublish everything that is due. Exits 1 when any item failed."""
    try:
        stats = run_with_database(run_scheduled_publishing)
    except Exception as e:
        print(f"Error: {truncate_error(str(e), ERROR_DETAIL_MAX_LENGTH)}")
        sys.exit(1)

    result = stats.as_dict()
    if args.json:
        print_json(result)
    else:
        print("Scheduled publishing finished")
        print(f"  Published videos:   {result['publishedVideos']}")
        print(f"  Published posts:    {result['publishedPosts']}")
        print(f"  Unpublished videos: {result['unpublishedVideos']}")
        print(f"  Unpublished posts:  {result['unpublishedPosts']}")
        print(f"  Errors:             {result['errorCount']}")
    if stats.errorCount > 0:
        sys.exit(1)


def cmd_cleanup_history(args):
    """Run the retention cleanup with the capped cron profile."""
    try:
        result = run_with_database(run_scheduled_cleanup)
    except Exception as e:
        print(f"Error: {truncate_error(str(e), ERROR_DETAIL_MAX_LENGTH)}")
        sys.exit(1)

    if args.json:
        print_json(result)
        return
    print(result["message"])
    for key in ("deletedCount", "remainingCount", "totalBatches", "retentionDays", "cutoffDate", "executionTime"):
        if key in result:
            print(f"  {key}: {result[key]}")


def cmd_cleanup_status(args):
    try:
        result = run_with_database(get_cleanup_status)
    except Exception as e:
        print(f"Error: {truncate_error(str(e), ERROR_DETAIL_MAX_LENGTH)}")
        sys.exit(1)

    if args.json:
        print_json(result)
        return
    print(f"Cleanup enabled:  {'yes' if result['cleanupEnabled'] else 'no'}")
    print(f"Retention days:   {result['retentionDays']}")
    print(f"Cutoff date:      {result['cutoffDate']}")
    print(f"Pending rows:     {result['pendingCleanupCount']}")


async def create_user(username: str, email: str, display_name: str, password: str, role: str,
                      department: str = None) -> int:
    """
    Insert a user.

    Raises:
        CLIError: If the username or email is already taken
    """
    now = datetime.now(timezone.utc)
    existing = await database.fetch_val(
        sa.select(users.c.id).where(sa.or_(users.c.username == username, users.c.email == email))
    )
    if existing:
        raise CLIError(f"Username or email already in use: {username} / {email}")
    try:
        return await database.execute(
            users.insert().values(
                username=username,
                email=email,
                display_name=display_name,
                password_hash=hash_password(password),
                role=role,
                department=department,
                is_active=True,
                failed_login_count=0,
                created_at=now,
                updated_at=now,
            )
        )
    except Exception as e:
        if is_unique_violation(e):
            raise CLIError(f"Username or email already in use: {username} / {email}")
        raise


def cmd_create_user(args):
    """Create a user, prompting for the password when it is not given."""
    try:
        role = args.role.upper()
        if role not in ALL_ROLES:
            raise CLIError(f"Invalid role: {args.role} (choose from {', '.join(ALL_ROLES)})")

        password = args.password
        if not password:
            password = getpass.getpass("Password: ")
            if password != getpass.getpass("Confirm password: "):
                raise CLIError("Passwords do not match")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise CLIError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        user_id = run_with_database(
            create_user,
            args.username,
            args.email,
            args.display_name or args.username,
            password,
            role,
            args.department,
        )
        print(f"Created user {args.username} (id {user_id}, role {role})")
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_settings(args):
    """Settings management commands."""
    service = get_settings_service()
    key = getattr(args, "key", None)

    try:
        if args.settings_command == "seed":
            created = run_with_database(service.seed_defaults, updated_by="cli")
            if created:
                print(f"✓ Seeded {len(created)} settings")
                for created_key in created:
                    print(f"  • {created_key}")
            else:
                print("All settings already exist in the database.")

        elif args.settings_command == "list":
            grouped = run_with_database(service.get_all)
            if not grouped:
                print("No settings found in database.")
                print("Run 'orgvideo settings seed' to store the defaults.")
                return

            table = Table(title="Settings")
            table.add_column("Category")
            table.add_column("Key")
            table.add_column("Value")
            table.add_column("Updated by")
            for category, settings_list in grouped.items():
                for s in settings_list:
                    value_display = json.dumps(s["value"], ensure_ascii=False)
                    if len(value_display) > 50:
                        value_display = value_display[:47] + "..."
                    table.add_row(category, s["key"], value_display, s["updated_by"] or "-")
            console.print(table)

        elif args.settings_command == "get":
            value = run_with_database(service.get, args.key)
            if value is None:
                raise CLIError(f"Setting '{args.key}' not found")
            print(f"{args.key} = {json.dumps(value, ensure_ascii=False)}")

        elif args.settings_command == "set":
            # Try to parse as JSON first (for booleans, numbers, lists)
            try:
                parsed_value = json.loads(args.value)
            except json.JSONDecodeError:
                parsed_value = args.value
            run_with_database(service.set, args.key, parsed_value, updated_by="cli")
            print(f"Setting updated: {args.key} = {json.dumps(parsed_value, ensure_ascii=False)}")

    except SettingsValidationError as e:
        print(f"Validation error for '{key}': {e}")
        sys.exit(1)
    except KeyError:
        print(f"Setting '{key}' is not a known setting.")
        print("Use 'orgvideo settings list' to see available settings.")
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="orgvideo", description="orgvideo CLI - operator commands")
    subparsers = parser.add_subparsers(dest="command", required=True)

    publish_parser = subparsers.add_parser("publish-scheduled", help="Publish/unpublish scheduled content")
    publish_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    publish_parser.set_defaults(func=cmd_publish_scheduled)

    cleanup_parser = subparsers.add_parser("cleanup-history", help="Delete view history past retention")
    cleanup_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    cleanup_parser.set_defaults(func=cmd_cleanup_history)

    status_parser = subparsers.add_parser("cleanup-status", help="Show view history cleanup status")
    status_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    status_parser.set_defaults(func=cmd_cleanup_status)

    user_parser = subparsers.add_parser("create-user", help="Create a user")
    user_parser.add_argument("username", help="Login name")
    user_parser.add_argument("email", help="Email address")
    user_parser.add_argument("-n", "--display-name", help="Display name (default: username)")
    user_parser.add_argument("-r", "--role", default="VIEWER", help="ADMIN, CURATOR or VIEWER (default: VIEWER)")
    user_parser.add_argument("-d", "--department", help="Department")
    user_parser.add_argument("-p", "--password", help="Password (prompted when omitted)")
    user_parser.set_defaults(func=cmd_create_user)

    settings_parser = subparsers.add_parser("settings", help="Manage database-backed settings")
    settings_subparsers = settings_parser.add_subparsers(dest="settings_command", required=True)
    settings_subparsers.add_parser("seed", help="Store defaults for settings not yet in the database")
    settings_subparsers.add_parser("list", help="List all settings from database")
    get_parser = settings_subparsers.add_parser("get", help="Get a single setting value")
    get_parser.add_argument("key", help="Setting key (e.g., view_count_threshold_percent)")
    set_parser = settings_subparsers.add_parser("set", help="Set a setting value")
    set_parser.add_argument("key", help="Setting key")
    set_parser.add_argument("value", help="New value (JSON-parseable for numbers/booleans/lists)")
    settings_parser.set_defaults(func=cmd_settings)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
