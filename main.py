#!/usr/bin/env python3
"""
FarmAssist -- API server and administration commands.

Usage:
  python main.py serve
  python main.py serve --host 127.0.0.1 --port 8000 --reload
  python main.py create-admin --email admin@farm.io
  python main.py create-admin --email admin@farm.io --password 's3cret-pass'

Environment variables:
  See core/config.py. HTTPS_ENABLE, SSL_KEY_PATH and SSL_CERT_PATH control TLS
  for `serve`; DATABASE_URL selects the credential store for both commands.
"""

import argparse
import getpass
import sys
from pathlib import Path
from typing import Optional

from core.config import Settings, get_settings


def _tls_files(settings: Settings) -> Optional[tuple[str, str]]:
    """Return (key, cert) if HTTPS is enabled and both files exist.

    Falls back to plain HTTP with a warning when either file is missing, so a
    misconfigured certificate path does not keep the service down.
    """
    if not settings.https_enable:
        return None
    key, cert = Path(settings.ssl_key_path), Path(settings.ssl_cert_path)
    if settings.ssl_key_path and settings.ssl_cert_path and key.is_file() and cert.is_file():
        return str(key), str(cert)
    print(
        "  [!] HTTPS_ENABLE is set but SSL_KEY_PATH / SSL_CERT_PATH are missing or unreadable. "
        "Falling back to HTTP.",
        file=sys.stderr,
    )
    return None


def serve(args: argparse.Namespace) -> None:
    import uvicorn

    settings = get_settings()
    tls = _tls_files(settings)
    ssl_kwargs = {"ssl_keyfile": tls[0], "ssl_certfile": tls[1]} if tls else {}
    scheme = "https" if tls else "http"
    host = args.host or settings.host
    port = args.port or settings.port
    print(f"\nFarmAssist API on {scheme}://{host}:{port} (environment={settings.environment})\n")
    uvicorn.run("asgi:app", host=host, port=port, reload=args.reload, **ssl_kwargs)


def create_admin(args: argparse.Namespace) -> int:
    from auth.models import Role, new_user
    from auth.store import UserStore
    from auth.tokens import MAX_PASSWORD_BYTES, hash_password

    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        existing = store.get_by_email(args.email)
        if existing is not None:
            print(f"  User already exists: {existing.email} (role: {existing.role.value})")
            return 0

        password = args.password or getpass.getpass("Admin password: ")
        if len(password) < 6:
            print("  [!] Password must be at least 6 characters.", file=sys.stderr)
            return 1
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes.", file=sys.stderr)
            return 1

        admin = new_user(
            email=args.email,
            hashed_password=hash_password(password),
            first_name=args.first_name,
            last_name=args.last_name,
            phone=args.phone,
            role=Role.ADMIN,
        )
        admin.is_verified = True
        uid = store.create_user(admin)
        print(f"  Admin user created: {admin.email} (id {uid})")
        return 0
    finally:
        store.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="farmassist",
        description="FarmAssist API server and administration commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    serve_p = sub.add_parser("serve", help="Run the API server")
    serve_p.add_argument("--host", default=None, help="Bind address (default: HOST setting)")
    serve_p.add_argument("--port", type=int, default=None, help="Bind port (default: PORT setting)")
    serve_p.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    admin_p = sub.add_parser("create-admin", help="Create an administrator account")
    admin_p.add_argument("--email", required=True, help="Admin email address")
    admin_p.add_argument("--password", default=None, help="Admin password (prompted if omitted)")
    admin_p.add_argument("--first-name", default="Admin")
    admin_p.add_argument("--last-name", default="User")
    admin_p.add_argument("--phone", default="")

    args = parser.parse_args()
    if args.command == "serve":
        serve(args)
    elif args.command == "create-admin":
        sys.exit(create_admin(args))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
