"""
TaskHub CLI — Bootstrap and management commands.

Commands:
- taskhub init          — Create DB tables, seed the first admin user
- taskhub run           — Start the API server (uvicorn)
- taskhub check-config  — Validate taskhub.yaml and print the effective settings
- taskhub cleanup-logs  — Apply log retention (delete / gzip old JSONL files)
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from typing import Optional

logger = logging.getLogger("taskhub.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="taskhub",
        description="TaskHub — task management API",
    )
    parser.add_argument(
        "--config", default=None, help="Path to taskhub.yaml (default: auto-discover)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # taskhub init
    init_parser = subparsers.add_parser("init", help="Create tables and seed an admin user")
    init_parser.add_argument("--admin-email", default="admin@taskhub.local", help="Admin email")
    init_parser.add_argument(
        "--admin-password", help="Admin password (prompted if not provided)"
    )

    # taskhub run
    run_parser = subparsers.add_parser("run", help="Start the API server")
    run_parser.add_argument("--host", default=None, help="Host to bind (default: server.host)")
    run_parser.add_argument("--port", type=int, default=None, help="Port (default: server.port)")

    # taskhub check-config
    subparsers.add_parser("check-config", help="Validate taskhub.yaml")

    # taskhub cleanup-logs
    subparsers.add_parser("cleanup-logs", help="Apply log retention policy")

    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args)
    elif args.command == "run":
        return cmd_run(args)
    elif args.command == "check-config":
        return cmd_check_config(args)
    elif args.command == "cleanup-logs":
        return cmd_cleanup_logs(args)
    else:
        parser.print_help()
        return 0


def _load(args: argparse.Namespace):
    from taskhub.engine.config import load_config
    from taskhub.engine.errors import ConfigError

    try:
        return load_config(args.config)
    except FileNotFoundError:
        print(f"[ERROR] Config file not found: {args.config}")
        return None
    except ConfigError as e:
        print(f"[ERROR] Invalid config: {e.message}")
        return None


def cmd_init(args: argparse.Namespace) -> int:
    """
    Bootstrap the database:
    1. Load config
    2. Create all tables
    3. Create the admin user, or reset its password when it already exists
    """
    print("=" * 60)
    print("  TaskHub Initialization")
    print("=" * 60)

    config = _load(args)
    if config is None:
        return 1
    print("[OK] Config loaded")

    from sqlalchemy.exc import SQLAlchemyError

    from taskhub.db.models import User
    from taskhub.db.session import close_db, init_db, session_scope
    from taskhub.engine.context import Role
    from taskhub.engine.errors import ValidationFailedError
    from taskhub.engine.security import hash_password, normalize_email, validate_password_policy

    try:
        factory = init_db(config.database.url, create_tables=True)
        print("[OK] Database tables created")
    except SQLAlchemyError as e:
        print(f"[ERROR] Database initialization failed: {e}")
        return 1

    admin_password = args.admin_password
    if not admin_password:
        while True:
            admin_password = getpass.getpass("  Enter admin password: ")
            confirm = getpass.getpass("  Confirm password: ")
            if admin_password == confirm:
                break
            print("  Passwords do not match. Try again.")

    try:
        email = normalize_email(args.admin_email)
        validate_password_policy(admin_password, config.security.password_min_length)
    except ValidationFailedError as e:
        print(f"[ERROR] {e.message}")
        close_db()
        return 1

    password_hash = hash_password(admin_password, config.security.bcrypt_rounds)
    try:
        with session_scope(factory) as session:
            existing = session.query(User).filter_by(email=email).first()
            if existing is not None:
                existing.password_hash = password_hash
                existing.role = Role.ADMIN.value
                existing.is_active = True
                print(f"[INFO] Admin '{email}' already exists; password reset")
            else:
                session.add(User(
                    email=email,
                    password_hash=password_hash,
                    first_name="System",
                    last_name="Administrator",
                    role=Role.ADMIN.value,
                    is_active=True,
                ))
                print(f"[OK] Created admin user: '{email}'")
    except SQLAlchemyError as e:
        print(f"[ERROR] Seeding admin failed: {e}")
        return 1
    finally:
        close_db()

    print()
    print("  Run: taskhub run")
    print("=" * 60)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Start uvicorn with the configured app."""
    import uvicorn

    config = _load(args)
    if config is None:
        return 1

    from taskhub.api.app import create_app
    from taskhub.engine.config import set_config

    set_config(config)
    logging.basicConfig(
        level=config.logging.level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = args.host or config.server.host
    port = args.port or config.server.port
    print(f"Starting TaskHub on {host}:{port} ({config.environment})...")
    try:
        uvicorn.run(create_app(config), host=host, port=port)
    except KeyboardInterrupt:
        print("\nServer stopped.")
    return 0


def cmd_check_config(args: argparse.Namespace) -> int:
    """Validate config and print the effective values (secrets masked)."""
    config = _load(args)
    if config is None:
        return 1

    db_url = config.database.url
    if "@" in db_url:
        scheme, _, rest = db_url.partition("://")
        db_url = f"{scheme}://***@{rest.split('@', 1)[1]}"

    print(f"[OK] Environment: {config.environment}")
    print(f"  database:       {db_url}")
    print(f"  redis:          {config.redis.url} (sessions db {config.redis.session_db})")
    print(f"  uploads:        {config.documents.upload_dir} (max {config.documents.max_docs_per_task} per task)")
    print(f"  realtime relay: {'on' if config.realtime.redis_relay else 'off'}")
    print(f"  logs:           {config.logging.directory} ({config.logging.level})")
    return 0


def cmd_cleanup_logs(args: argparse.Namespace) -> int:
    """Delete expired JSONL logs and gzip older ones."""
    config = _load(args)
    if config is None:
        return 1

    from taskhub.engine.logging import LogRetentionManager

    lc = config.logging
    manager = LogRetentionManager(
        log_dir=lc.directory,
        retention_days={
            "execution": lc.retention.execution_days,
            "security": lc.retention.security_days,
        },
        compress_after_days=lc.compress_after_days,
    )
    result = manager.cleanup()
    print(f"[OK] Deleted {result['deleted']} file(s), compressed {result['compressed']} file(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
