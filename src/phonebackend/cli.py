"""``phone-backend`` command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Callable, Sequence

from pydantic import ValidationError

from phonebackend._constants import DEFAULT_USERNAME
from phonebackend.agent import PhoneBackendAgent
from phonebackend.config import PhoneBackendConfig, load_credentials, save_credentials
from phonebackend.exceptions import AuthenticationError, ConfigError, PhoneBackendError
from phonebackend.models.credentials import Credentials
from phonebackend.store import PathStore

HELP_TEXT = """\
phone-backend: serve a local data store through the routing service

Commands:
  login [username]  Save the identity used to connect
  start             Start serving requests
  status            Show the saved identity
  data              Print the local database
  help              Show this help message

Examples:
  phone-backend login alice
  phone-backend start
  phone-backend status
  phone-backend data
"""


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="phone-backend", add_help=False)
    parser.add_argument("command", nargs="?", default="help")
    parser.add_argument("username", nargs="?", default=None)
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logs.")
    return parser.parse_args(argv)


def _cmd_login(config: PhoneBackendConfig, args: argparse.Namespace) -> int:
    try:
        credentials = Credentials(username=args.username or DEFAULT_USERNAME)
    except ValidationError as exc:
        message = exc.errors()[0]["msg"]
        print(f"Invalid username {args.username!r}: {message}", file=sys.stderr)
        return 1
    save_credentials(config.credentials_file, credentials)
    print(f"Logged in as: {credentials.username}")
    print('Run "phone-backend start" to begin serving')
    return 0


def _cmd_start(config: PhoneBackendConfig, _args: argparse.Namespace) -> int:
    credentials = load_credentials(config.credentials_file)
    if credentials is None:
        print('Not logged in. Run "phone-backend login" first')
        return 0

    print("Phone Backend starting...")
    print(f"Username: {credentials.username}")

    def announce() -> None:
        print("Authentication successful")
        print(f"Your API URL: {config.api_url(credentials.username)}")
        print("Status: online. Press Ctrl+C to stop")

    async def serve() -> None:
        async with PhoneBackendAgent(config, credentials.username, on_authenticated=announce) as agent:
            await agent.run()

    try:
        asyncio.run(serve())
    except AuthenticationError as exc:
        print(f"Authentication failed: {exc}", file=sys.stderr)
        return 1
    print("Shut down")
    return 0


def _cmd_status(config: PhoneBackendConfig, _args: argparse.Namespace) -> int:
    credentials = load_credentials(config.credentials_file)
    if credentials is None:
        print("Not logged in")
        return 0
    print("Phone Backend status")
    print(f"Username:  {credentials.username}")
    print(f"Logged in: {credentials.timestamp.isoformat()}")
    print(f"API URL:   {config.api_url(credentials.username)}")
    print("\nTo start: phone-backend start")
    return 0


def _cmd_data(config: PhoneBackendConfig, _args: argparse.Namespace) -> int:
    store = PathStore(config.data_file)
    print("Local database:\n")
    print(json.dumps(store.snapshot(), indent=2))
    return 0


def _cmd_help(_config: PhoneBackendConfig, _args: argparse.Namespace) -> int:
    print(HELP_TEXT)
    return 0


_COMMANDS: dict[str, Callable[[PhoneBackendConfig, argparse.Namespace], int]] = {
    "login": _cmd_login,
    "start": _cmd_start,
    "status": _cmd_status,
    "data": _cmd_data,
    "help": _cmd_help,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    command = _COMMANDS.get(args.command, _cmd_help)
    try:
        config = PhoneBackendConfig.from_env()
        return command(config, args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1
    except PhoneBackendError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
