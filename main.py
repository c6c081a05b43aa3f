"""Command-line interface for the task manager service."""

from __future__ import annotations
import argparse
import logging
import sys
from getpass import getpass
from typing import Sequence

try:
    import httpx
except ImportError as exc:  # pragma: no cover - exercised in environments missing deps
    raise SystemExit(
        "The 'httpx' package is required. Run `pip install -e .` to install dependencies."
    ) from exc

from taskmanager.config import Settings, load_settings
from taskmanager.database import Database, DuplicateEmailError

logger = logging.getLogger("taskmanager.main")

_DEFAULT_SERVICE_URL = "http://localhost:4000"


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Task manager API utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create the task database schema")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the API (default: PORT or 4000)",
    )

    user_parser = subparsers.add_parser("create-user", help="Register a user from the terminal")
    user_parser.add_argument("name", help="Display name for the user")
    user_parser.add_argument("email", help="Unique email address for login")

    check_parser = subparsers.add_parser("check", help="Query the health endpoint of a running API")
    check_parser.add_argument(
        "--service-url",
        default=_DEFAULT_SERVICE_URL,
        help=f"Base URL of the running service (default: {_DEFAULT_SERVICE_URL})",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "create-user", "check"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path, pool_size=settings.pool_size)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(settings: Settings, *, host: str | None, port: int | None) -> None:
    from taskmanager.api import create_app
    import uvicorn

    bind_host = host or settings.host
    bind_port = port or settings.port
    logger.info("Starting task API on http://%s:%s", bind_host, bind_port)
    if not settings.require_auth:
        logger.warning("Authentication is disabled; all tasks are shared by every caller.")

    app = create_app(settings=settings)
    uvicorn.run(app, host=bind_host, port=bind_port, log_level="info")


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass("Password: ")
        if not password:
            print("Password must not be empty. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _create_user(database: Database, name: str, email: str) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Aborted creating user.")
        return 1

    try:
        user = database.create_user(name, email, password)
    except DuplicateEmailError:
        print(f"Failed to create user: {email.strip().lower()} is already registered.")
        return 1
    except ValueError as exc:
        print(f"Failed to create user: {exc}")
        return 1

    print(f"Created user #{user.id}: {user.name} <{user.email}>")
    return 0


def _check_service(base_url: str) -> int:
    endpoint = base_url.rstrip("/") + "/api/health"

    try:
        response = httpx.get(endpoint, timeout=10.0)
    except httpx.HTTPError as exc:
        print(f"Failed to contact task service: {exc}")
        return 1

    try:
        payload = response.json()
    except ValueError:
        print(f"Service responded with {response.status_code}: {response.text.strip()}")
        return 1

    if response.status_code == 200 and payload.get("ok"):
        print(f"Task service at {base_url} is healthy.")
        return 0

    message = payload.get("message", "unknown error")
    print(f"Task service at {base_url} is unhealthy ({response.status_code}): {message}")
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)

    if args.command == "check":
        return _check_service(args.service_url)

    settings = load_settings()

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
        return 0

    database = _initialise_database(settings)
    try:
        if args.command == "create-user":
            return _create_user(database, args.name, args.email)
        print("Database initialisation complete.")
        return 0
    finally:
        database.close()


if __name__ == "__main__":
    raise SystemExit(main())
