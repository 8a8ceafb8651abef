"""Command-line interface for Household Core."""

import argparse
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from uuid import UUID

from household_core import __version__
from household_core.container import Container
from household_core.domain.entitlements import SubscriptionStatus, SubscriptionStore
from household_core.exceptions import HouseholdCoreError
from household_core.repositories.sqlite import SQLiteDatabase, build_repositories


def get_default_db_path() -> Path:
    """Get the default database path in user's home directory."""
    return Path.home() / ".household_core" / "households.db"


def create_app(db_path: Path | None = None) -> tuple[SQLiteDatabase, Container]:
    """Open the database and wire the services around it."""
    if db_path is None:
        db_path = get_default_db_path()

    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = SQLiteDatabase(str(db_path))
    db.initialize()
    return db, Container(database=db)


def _db_path(args: argparse.Namespace) -> Path:
    return Path(args.database) if args.database else get_default_db_path()


def _parse_uuid(value: str, label: str) -> UUID | None:
    try:
        return UUID(value)
    except ValueError:
        print(f"Error: Invalid {label}: {value}")
        return None


def _run(args: argparse.Namespace, action: Callable[[Container, UUID], int]) -> int:
    """Open the database, resolve --user and run action, reporting domain errors."""
    db_path = _db_path(args)
    if not db_path.exists():
        print(f"Error: Database not found at {db_path}")
        print("Run 'hhc init' to create a new database")
        return 1

    caller_id = _parse_uuid(args.user, "user ID")
    if caller_id is None:
        return 1

    db, container = create_app(db_path)
    try:
        return action(container, caller_id)
    except HouseholdCoreError as e:
        print(f"Error [{e.error_code}]: {e.message}")
        return 1
    finally:
        db.close()


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize a new database."""
    db_path = _db_path(args)

    if db_path.exists() and not args.force:
        print(f"Database already exists at {db_path}")
        print("Use --force to reinitialize (WARNING: will delete existing data)")
        return 1

    if db_path.exists() and args.force:
        db_path.unlink()

    db, _ = create_app(db_path)
    db.close()

    print(f"Initialized database at {db_path}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show database status."""
    db_path = _db_path(args)

    if not db_path.exists():
        print(f"No database found at {db_path}")
        print("Run 'hhc init' to create a new database")
        return 1

    db = SQLiteDatabase(str(db_path))
    repos = build_repositories(db)
    try:
        households = list(repos.households.list_all())
        print(f"Database: {db_path}")
        print(f"Households: {len(households)}")

        for household in households:
            members = list(repos.memberships.list_current(household.id))
            state = "active" if household.is_active else "inactive"
            print(f"  - {household.name} [{state}]: {len(members)} members")
    finally:
        db.close()

    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Show version information."""
    print(f"Household Core v{__version__}")
    return 0


def cmd_household_create(args: argparse.Namespace) -> int:
    def action(container: Container, caller_id: UUID) -> int:
        created = container.membership_service.create_household(caller_id, args.name)
        print(f"Household created: {created.household.id}")
        print(f"  Name: {created.household.name}")
        print(f"  Invite code: {created.invite.code}")
        return 0

    return _run(args, action)


def cmd_household_join(args: argparse.Namespace) -> int:
    def action(container: Container, caller_id: UUID) -> int:
        result = container.membership_service.join(caller_id, args.code)
        if result.joined:
            print(f"Joined household {result.household_id}")
        else:
            print(f"Already a member of household {result.household_id}")
        return 0

    return _run(args, action)


def cmd_household_leave(args: argparse.Namespace) -> int:
    household_id = _parse_uuid(args.household, "household ID")
    if household_id is None:
        return 1

    def action(container: Container, caller_id: UUID) -> int:
        result = container.membership_service.leave(caller_id, household_id)
        print(f"Left household {household_id}")
        print(f"  Members remaining: {result.members_remaining}")
        if result.household_deactivated:
            print("  Household deactivated")
        return 0

    return _run(args, action)


def cmd_household_transfer(args: argparse.Namespace) -> int:
    household_id = _parse_uuid(args.household, "household ID")
    new_owner_id = _parse_uuid(args.new_owner, "new owner ID")
    if household_id is None or new_owner_id is None:
        return 1

    def action(container: Container, caller_id: UUID) -> int:
        container.membership_service.transfer_owner(caller_id, household_id, new_owner_id)
        print(f"Ownership of {household_id} transferred to {new_owner_id}")
        return 0

    return _run(args, action)


def cmd_household_kick(args: argparse.Namespace) -> int:
    household_id = _parse_uuid(args.household, "household ID")
    member_id = _parse_uuid(args.member, "member ID")
    if household_id is None or member_id is None:
        return 1

    def action(container: Container, caller_id: UUID) -> int:
        result = container.membership_service.kick(caller_id, household_id, member_id)
        print(f"Removed {member_id} from household {household_id}")
        print(f"  Members remaining: {result.members_remaining}")
        return 0

    return _run(args, action)


def cmd_household_members(args: argparse.Namespace) -> int:
    household_id = _parse_uuid(args.household, "household ID")
    if household_id is None:
        return 1

    def action(container: Container, caller_id: UUID) -> int:
        members = container.membership_service.list_members(caller_id, household_id)
        print(f"Members of {household_id}: {len(members)}")
        for member in members:
            name = member.username or "-"
            print(f"  - {member.user_id} {name} ({member.role.value})")
        return 0

    return _run(args, action)


def cmd_household_requests(args: argparse.Namespace) -> int:
    household_id = _parse_uuid(args.household, "household ID")
    if household_id is None:
        return 1

    def action(container: Container, caller_id: UUID) -> int:
        requests = container.membership_service.list_join_requests(caller_id, household_id)
        print(f"Pending join requests for {household_id}: {len(requests)}")
        for request in requests:
            name = request.username or "-"
            print(f"  - {request.joiner_user_id} {name} ({request.requested_at:%Y-%m-%d})")
        return 0

    return _run(args, action)


def cmd_household_dismiss_requests(args: argparse.Namespace) -> int:
    household_id = _parse_uuid(args.household, "household ID")
    if household_id is None:
        return 1

    def action(container: Container, caller_id: UUID) -> int:
        dismissed = container.membership_service.dismiss_join_requests(
            caller_id, household_id
        )
        print(f"Dismissed {dismissed} join requests")
        return 0

    return _run(args, action)


def cmd_invite_show(args: argparse.Namespace) -> int:
    household_id = _parse_uuid(args.household, "household ID")
    if household_id is None:
        return 1

    def action(container: Container, caller_id: UUID) -> int:
        invite = container.invite_service.get_active(caller_id, household_id)
        print(f"Invite code: {invite.code}")
        print(f"  Uses: {invite.used_count}")
        return 0

    return _run(args, action)


def cmd_invite_rotate(args: argparse.Namespace) -> int:
    household_id = _parse_uuid(args.household, "household ID")
    if household_id is None:
        return 1

    def action(container: Container, caller_id: UUID) -> int:
        result = container.invite_service.rotate(caller_id, household_id)
        print(f"New invite code: {result.invite_code}")
        return 0

    return _run(args, action)


def cmd_invite_revoke(args: argparse.Namespace) -> int:
    household_id = _parse_uuid(args.household, "household ID")
    if household_id is None:
        return 1

    def action(container: Container, caller_id: UUID) -> int:
        result = container.invite_service.revoke(caller_id, household_id)
        print(result.message)
        return 0

    return _run(args, action)


def cmd_plan_status(args: argparse.Namespace) -> int:
    def action(container: Container, caller_id: UUID) -> int:
        plan_status = container.membership_service.get_plan_status(caller_id)
        paywall = container.quota_service.paywall_status(
            caller_id, plan_status.household_id
        )
        print(f"Household: {plan_status.household_id}")
        print(f"Plan: {plan_status.plan.value}")
        for metric, count in paywall.usage.items():
            limit = paywall.limits.get(metric)
            ceiling = str(limit) if limit is not None else "unlimited"
            print(f"  {metric.value}: {count} / {ceiling}")
        return 0

    return _run(args, action)


def cmd_subscription_record(args: argparse.Namespace) -> int:
    period_end = None
    if args.period_end:
        try:
            period_end = datetime.fromisoformat(args.period_end)
        except ValueError:
            print(f"Error: Invalid period end: {args.period_end}")
            return 1

    def action(container: Container, caller_id: UUID) -> int:
        subscription = container.subscription_service.record(
            user_id=caller_id,
            entitlement_key=args.key,
            store=SubscriptionStore(args.store),
            product_id=args.product,
            status=SubscriptionStatus(args.status),
            current_period_end_at=period_end,
        )
        attached = subscription.household_id or "floating"
        print(f"Subscription recorded: {subscription.id}")
        print(f"  Status: {subscription.status.value}")
        print(f"  Household: {attached}")
        return 0

    return _run(args, action)


def _add_user_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--user", "-u", required=True, help="Caller user ID")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="hhc",
        description="Household Core - membership, invites and plan quotas",
    )
    parser.add_argument(
        "--database",
        "-d",
        help="Path to SQLite database file",
        default=None,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init command
    init_parser = subparsers.add_parser("init", help="Initialize a new database")
    init_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Force reinitialization (deletes existing data)",
    )
    init_parser.set_defaults(func=cmd_init)

    # status command
    status_parser = subparsers.add_parser("status", help="Show database status")
    status_parser.set_defaults(func=cmd_status)

    # version command
    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=cmd_version)

    # household command group
    household_parser = subparsers.add_parser("household", help="Household commands")
    household_subparsers = household_parser.add_subparsers(
        dest="household_command", help="Household subcommands"
    )

    household_create_parser = household_subparsers.add_parser(
        "create", help="Create a household owned by the caller"
    )
    _add_user_argument(household_create_parser)
    household_create_parser.add_argument("--name", required=True, help="Household name")
    household_create_parser.set_defaults(func=cmd_household_create)

    household_join_parser = household_subparsers.add_parser(
        "join", help="Join a household with an invite code"
    )
    _add_user_argument(household_join_parser)
    household_join_parser.add_argument("--code", required=True, help="Invite code")
    household_join_parser.set_defaults(func=cmd_household_join)

    household_leave_parser = household_subparsers.add_parser(
        "leave", help="Leave a household"
    )
    _add_user_argument(household_leave_parser)
    household_leave_parser.add_argument("--household", required=True, help="Household ID")
    household_leave_parser.set_defaults(func=cmd_household_leave)

    household_transfer_parser = household_subparsers.add_parser(
        "transfer", help="Transfer ownership to another member"
    )
    _add_user_argument(household_transfer_parser)
    household_transfer_parser.add_argument(
        "--household", required=True, help="Household ID"
    )
    household_transfer_parser.add_argument(
        "--new-owner", required=True, help="User ID of the new owner"
    )
    household_transfer_parser.set_defaults(func=cmd_household_transfer)

    household_kick_parser = household_subparsers.add_parser(
        "kick", help="Remove a member from the household"
    )
    _add_user_argument(household_kick_parser)
    household_kick_parser.add_argument("--household", required=True, help="Household ID")
    household_kick_parser.add_argument("--member", required=True, help="Member user ID")
    household_kick_parser.set_defaults(func=cmd_household_kick)

    household_members_parser = household_subparsers.add_parser(
        "members", help="List current members"
    )
    _add_user_argument(household_members_parser)
    household_members_parser.add_argument(
        "--household", required=True, help="Household ID"
    )
    household_members_parser.set_defaults(func=cmd_household_members)

    for name, help_text, func in (
        ("requests", "List join requests held back by the member cap", cmd_household_requests),
        ("dismiss-requests", "Dismiss all pending join requests", cmd_household_dismiss_requests),
    ):
        sub = household_subparsers.add_parser(name, help=help_text)
        _add_user_argument(sub)
        sub.add_argument("--household", required=True, help="Household ID")
        sub.set_defaults(func=func)

    # invite command group
    invite_parser = subparsers.add_parser("invite", help="Invite commands")
    invite_subparsers = invite_parser.add_subparsers(
        dest="invite_command", help="Invite subcommands"
    )
    for name, help_text, func in (
        ("show", "Show the active invite code", cmd_invite_show),
        ("rotate", "Replace the invite code", cmd_invite_rotate),
        ("revoke", "Revoke the invite code", cmd_invite_revoke),
    ):
        sub = invite_subparsers.add_parser(name, help=help_text)
        _add_user_argument(sub)
        sub.add_argument("--household", required=True, help="Household ID")
        sub.set_defaults(func=func)

    # plan command group
    plan_parser = subparsers.add_parser("plan", help="Plan commands")
    plan_subparsers = plan_parser.add_subparsers(
        dest="plan_command", help="Plan subcommands"
    )
    plan_status_parser = plan_subparsers.add_parser(
        "status", help="Show the caller's household plan and usage"
    )
    _add_user_argument(plan_status_parser)
    plan_status_parser.set_defaults(func=cmd_plan_status)

    # subscription command group
    subscription_parser = subparsers.add_parser(
        "subscription", help="Subscription commands"
    )
    subscription_subparsers = subscription_parser.add_subparsers(
        dest="subscription_command", help="Subscription subcommands"
    )
    subscription_record_parser = subscription_subparsers.add_parser(
        "record", help="Record a billing snapshot for the caller"
    )
    _add_user_argument(subscription_record_parser)
    subscription_record_parser.add_argument(
        "--key", default="premium", help="Entitlement key (default: premium)"
    )
    subscription_record_parser.add_argument(
        "--store",
        choices=[store.value for store in SubscriptionStore],
        default=SubscriptionStore.PROMOTIONAL.value,
        help="Billing store",
    )
    subscription_record_parser.add_argument(
        "--product", required=True, help="Store product ID"
    )
    subscription_record_parser.add_argument(
        "--status",
        choices=[status.value for status in SubscriptionStatus],
        default=SubscriptionStatus.ACTIVE.value,
        help="Subscription status",
    )
    subscription_record_parser.add_argument(
        "--period-end", default=None, help="Current period end (ISO 8601)"
    )
    subscription_record_parser.set_defaults(func=cmd_subscription_record)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    groups = {
        "household": (household_parser, "household_command"),
        "invite": (invite_parser, "invite_command"),
        "plan": (plan_parser, "plan_command"),
        "subscription": (subscription_parser, "subscription_command"),
    }
    if args.command in groups:
        group_parser, dest = groups[args.command]
        if getattr(args, dest, None) is None:
            group_parser.print_help()
            return 0

    result: int = args.func(args)
    return result


if __name__ == "__main__":
    sys.exit(main())
