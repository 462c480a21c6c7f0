"""
Operations utilities - CLI tools for administering the approval service.
Talks to the configured store and role directory directly, so it is the way to bootstrap the first administrator.
"""

import argparse
import sys
from pathlib import Path

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.api.auth import create_access_token
from src.core import config
from src.core.errors import WorkflowError
from util.logging import logger

OPERATOR = "ops_cli"


def assign_role_command(args):
    """Create or update a user's role."""
    directory = config.get_role_directory(args.db_path)
    user, created = directory.assign_role(args.username, args.role, args.email)
    logger.log_role_assignment(user.username, user.role, OPERATOR, created)
    print(f"✅ User {user.username} {'created' if created else 'updated'} with role {user.role}")
    if user.email:
        print(f"   Email: {user.email}")
    return 0


def list_users_command(args):
    """Print every known user and role."""
    users = config.get_role_directory(args.db_path).list_users()
    if not users:
        print("No users found")
        return 0
    for user in users:
        print(f"{user.username:<24} {user.role:<14} {user.email or '-'}")
    return 0


def pending_command(args):
    """Print forms waiting on a role."""
    forms = config.get_form_store(args.db_path).list_pending_for(args.role)
    if not forms:
        print(f"No forms pending for {args.role}")
        return 0
    for form in forms:
        print(f"{form.id}  {form.form_type:<14} {form.status:<22} submitted by {form.submitted_by} "
              f"at {form.created_at.isoformat()}")
    return 0


def show_command(args):
    """Print one form with its audit trail."""
    form = config.get_form_store(args.db_path).get(args.form_id)
    print(f"Form {form.id} ({form.form_type})")
    print(f"   Submitted by: {form.submitted_by}")
    print(f"   Status: {form.status}")
    print(f"   Current approver: {form.current_approver}")
    for stage, stage_status in form.stage_statuses.items():
        print(f"   - {stage}: {stage_status}")
    if form.rejection_reason:
        print(f"   Rejection reason: {form.rejection_reason}")
    if form.audit_trail:
        print("   Audit trail:")
        for entry in form.audit_trail:
            line = f"     {entry.timestamp.isoformat()} {entry.role} {entry.action} by {entry.performed_by}"
            if entry.reason:
                line += f" ({entry.reason})"
            print(line)
    return 0


def validate_config_command(args):
    """Report configuration problems."""
    issues = config.validate_config()
    if issues:
        print("❌ Configuration issues found:")
        for issue in issues:
            print(f"   - {issue}")
        return 1
    print("✅ Configuration is valid")
    for form_type, stages in config.get_stage_sequences().items():
        print(f"   {form_type}: {' -> '.join(stages)}")
    return 0


def issue_token_command(args):
    """Sign a development token for a user."""
    token = create_access_token({"id": args.user_id or args.username, "username": args.username,
                                 "role": args.role})
    print(token)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Form approval service operations CLI",
        prog="python scripts/ops_util.py"
    )
    parser.add_argument("--db-path", default=None, help="SQLite database path (default: DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    assign_parser = subparsers.add_parser("assign-role", help="Create or update a user's role")
    assign_parser.add_argument("username")
    assign_parser.add_argument("role", choices=config.ROLES)
    assign_parser.add_argument("--email", default=None)
    assign_parser.set_defaults(func=assign_role_command)

    users_parser = subparsers.add_parser("list-users", help="List users and roles")
    users_parser.set_defaults(func=list_users_command)

    pending_parser = subparsers.add_parser("pending", help="List forms pending for a role")
    pending_parser.add_argument("role")
    pending_parser.set_defaults(func=pending_command)

    show_parser = subparsers.add_parser("show", help="Show a form and its audit trail")
    show_parser.add_argument("form_id")
    show_parser.set_defaults(func=show_command)

    validate_parser = subparsers.add_parser("validate-config", help="Check workflow configuration")
    validate_parser.set_defaults(func=validate_config_command)

    token_parser = subparsers.add_parser("issue-token", help="Sign a development bearer token")
    token_parser.add_argument("username")
    token_parser.add_argument("role", choices=config.ROLES)
    token_parser.add_argument("--user-id", default=None)
    token_parser.set_defaults(func=issue_token_command)

    return parser


def main(argv=None):
    """Main CLI entry point for operations utilities."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except WorkflowError as e:
        print(f"❌ {e.message}")
        logger.error(f"CLI {args.command} failed: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
