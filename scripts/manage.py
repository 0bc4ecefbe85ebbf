from __future__ import annotations

import argparse
import json
import sys

from core.db import PURPOSES, check_connections, database_statistics, init_databases, session_scope


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def cmd_migrate(args: argparse.Namespace) -> int:
    from alembic import command

    from core.alembic_utils import alembic_config

    for purpose in args.only or PURPOSES:
        print(f"$ alembic --name {purpose} upgrade head")
        command.upgrade(alembic_config(purpose), "head")
    return 0


def cmd_seed_demo(_: argparse.Namespace) -> int:
    from scripts import dev_seed

    dev_seed.main()
    return 0


def cmd_db_check(_: argparse.Namespace) -> int:
    status = check_connections()
    for purpose, item in status.items():
        print(f"{purpose}: {'OK' if item['connected'] else 'FAIL ' + str(item['error'])}")
    return 0 if all(item["connected"] for item in status.values()) else 1


def cmd_stats(_: argparse.Namespace) -> int:
    init_databases()
    for purpose, tables in database_statistics().items():
        print(f"[{purpose}]")
        for name, count in tables.items():
            print(f"  {name}: {count}")
    return 0


def cmd_seed_plans(_: argparse.Namespace) -> int:
    from core.services import plans as plan_service

    init_databases()
    with session_scope("auth") as session:
        for item in plan_service.seed_plans(session):
            print(f"{item['action']}: {item['plan']} (id={item['id']})")
    return 0


def cmd_create_user(args: argparse.Namespace) -> int:
    from core.errors import DomainError
    from core.services import users as user_service

    init_databases()
    with session_scope("auth") as session:
        try:
            if args.company:
                user, token = user_service.register(
                    session, email=args.email, password=args.password, name=args.name or args.email, company={"name": args.company}
                )
                user_service.verify_email(session, token)
            else:
                user = user_service.create_user(session, email=args.email, password=args.password, name=args.name or "")
        except DomainError as exc:
            print(f"error: {exc.message}", file=sys.stderr)
            return 1
        print(f"Created user id={user.id} email={user.email} active_company_id={user.active_company_id}")
    return 0


def cmd_admin_token(_: argparse.Namespace) -> int:
    from core.services.auth import issue_admin_token

    print(issue_admin_token())
    return 0


def cmd_user_token(args: argparse.Namespace) -> int:
    from core.services import users as user_service
    from core.services.auth import issue_user_token

    with session_scope("auth") as session:
        user = user_service.find_by_email(session, args.email)
        if user is None:
            print("User not found", file=sys.stderr)
            return 1
        print(issue_user_token(user))
    return 0


def cmd_reset_password(args: argparse.Namespace) -> int:
    from core.errors import DomainError
    from core.services import users as user_service

    with session_scope("auth") as session:
        user = user_service.find_by_email(session, args.email)
        if user is None:
            print("User not found", file=sys.stderr)
            return 1
        try:
            user_service.set_password(session, user, args.password)
        except DomainError as exc:
            print(f"error: {exc.message}", file=sys.stderr)
            return 1
        print(f"Password updated for {user.email}; existing sessions revoked")
    return 0


def cmd_expire_trials(_: argparse.Namespace) -> int:
    from core.services import subscriptions as subs

    init_databases()
    with session_scope("auth") as session:
        print(f"Expired trials: {subs.expire_trials(session)}")
    return 0


def cmd_extend_trial(args: argparse.Namespace) -> int:
    from core.errors import DomainError
    from core.services import subscriptions as subs

    with session_scope("auth") as session:
        try:
            sub = subs.extend_trial(session, args.company_id, days=args.days)
        except DomainError as exc:
            print(f"error: {exc.message}", file=sys.stderr)
            return 1
        _print_json(subs.trial_status(sub))
    return 0


def cmd_integrity_check(args: argparse.Namespace) -> int:
    from core.services import integrity

    init_databases()
    with session_scope("auth") as auth_db, session_scope("hr") as hr_db, session_scope("payroll") as payroll_db:
        if args.repair:
            outcome = integrity.repair(auth_db, hr_db, payroll_db)
            _print_json({"repaired": outcome["repaired"], "before": outcome["before"], "remaining": outcome["remaining"]["counts"]})
            return 0 if outcome["remaining"]["ok"] else 1
        report = integrity.check(auth_db, hr_db, payroll_db)
    _print_json(report if args.verbose else report["counts"])
    return 0 if report["ok"] else 1


def cmd_prune_idempotency(args: argparse.Namespace) -> int:
    from core.services.idempotency import prune_idempotency_records

    with session_scope("auth") as session:
        n = prune_idempotency_records(session, older_than_days=args.days)
    print(f"Pruned {n} idempotency records older than {args.days}d")
    return 0


def cmd_gen_pii_key(_: argparse.Namespace) -> int:
    from cryptography.fernet import Fernet

    print(Fernet.generate_key().decode())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="manage", description="SalarySync maintenance CLI")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_migrate = sub.add_parser("migrate", help="Upgrade the databases to head")
    p_migrate.add_argument("--only", action="append", choices=PURPOSES)
    p_migrate.set_defaults(func=cmd_migrate)

    sub.add_parser("seed-demo", help="Create a demo account, company and employees").set_defaults(func=cmd_seed_demo)
    sub.add_parser("db-check", help="Connectivity check for all three databases").set_defaults(func=cmd_db_check)
    sub.add_parser("stats", help="Print table counts per database").set_defaults(func=cmd_stats)
    sub.add_parser("seed-plans", help="Create missing catalogue plans").set_defaults(func=cmd_seed_plans)

    p_user = sub.add_parser("create-user", help="Create a verified user (optionally with a company)")
    p_user.add_argument("--email", required=True)
    p_user.add_argument("--password", required=True)
    p_user.add_argument("--name")
    p_user.add_argument("--company", help="Company name; registers the user as its owner with a trial")
    p_user.set_defaults(func=cmd_create_user)

    sub.add_parser("admin-token", help="Issue a platform admin token").set_defaults(func=cmd_admin_token)

    p_tok = sub.add_parser("user-token", help="Issue a session token for a user")
    p_tok.add_argument("--email", required=True)
    p_tok.set_defaults(func=cmd_user_token)

    p_reset = sub.add_parser("reset-password", help="Set a user's password and revoke their sessions")
    p_reset.add_argument("--email", required=True)
    p_reset.add_argument("--password", required=True)
    p_reset.set_defaults(func=cmd_reset_password)

    sub.add_parser("expire-trials", help="Move overdue trials to trial_expired").set_defaults(func=cmd_expire_trials)

    p_ext = sub.add_parser("extend-trial", help="Extend a company's trial")
    p_ext.add_argument("--company-id", type=int, required=True)
    p_ext.add_argument("--days", type=int)
    p_ext.set_defaults(func=cmd_extend_trial)

    p_int = sub.add_parser("integrity-check", help="Report (or repair) data inconsistencies")
    p_int.add_argument("--repair", action="store_true")
    p_int.add_argument("--verbose", action="store_true", help="Print every offending row")
    p_int.set_defaults(func=cmd_integrity_check)

    p_prune = sub.add_parser("prune-idempotency", help="Delete idempotency records older than N days")
    p_prune.add_argument("--days", type=int, default=7)
    p_prune.set_defaults(func=cmd_prune_idempotency)

    sub.add_parser("gen-pii-key", help="Generate a Fernet key for PII_ENC_KEY").set_defaults(func=cmd_gen_pii_key)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
