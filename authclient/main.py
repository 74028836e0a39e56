"""
Command-line entry point for the authenticated API client.

Logs in and out, shows the stored session, and issues one-off API requests
through the same refresh-and-retry path applications use.
"""

import sys
import json
import asyncio
import argparse
import getpass
import logging
from typing import Optional, List

from shared.exceptions import AuthClientError
from shared.logging_config import LogFormat, LogLevel, setup_logging

from authclient.api_client import AuthenticatedAPIClient
from authclient.auth.auth_service import AuthService
from authclient.config import ClientConfiguration
from authclient.notifications import CallbackNotificationSink

logger = logging.getLogger(__name__)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="authclient",
        description="Authenticated API client",
        epilog="""
Examples:
  %(prog)s login --email me@example.com
  %(prog)s status --json
  %(prog)s request GET /users/profile
  %(prog)s request PUT /users/profile --data '{"firstName": "Ada"}'
  %(prog)s logout
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--base-url", type=str, metavar="URL",
                              help="Override API base URL")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Also log to file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    login_parser = subparsers.add_parser("login", help="Log in and store the session")
    login_parser.add_argument("--email", required=True)
    login_parser.add_argument("--password", help="Prompted for when omitted")

    register_parser = subparsers.add_parser("register", help="Create an account and store the session")
    register_parser.add_argument("--first-name", required=True)
    register_parser.add_argument("--last-name", required=True)
    register_parser.add_argument("--email", required=True)
    register_parser.add_argument("--password", help="Prompted for when omitted")

    subparsers.add_parser("logout", help="Log out and clear the stored session")

    status_parser = subparsers.add_parser("status", help="Show the stored session")
    status_parser.add_argument("--json", action="store_true", help="Output in JSON format")

    request_parser = subparsers.add_parser("request", help="Make an authenticated API request")
    request_parser.add_argument("method", type=str.upper,
                                choices=["GET", "POST", "PUT", "PATCH", "DELETE"])
    request_parser.add_argument("path")
    request_parser.add_argument("--data", type=str, metavar="JSON", help="JSON request body")

    return parser.parse_args(argv)


def build_status(service: AuthService) -> dict:
    """Describe the stored session without exposing tokens."""
    user = service.get_current_user()
    expiry = service.get_access_token_expiry()
    return {
        'authenticated': service.is_authenticated(),
        'user': user.to_dict() if user else None,
        'access_token_expires_at': expiry.isoformat() if expiry else None,
    }


async def run_command(args: argparse.Namespace, config: ClientConfiguration) -> int:
    """Run one CLI command against the configured API."""
    sink = CallbackNotificationSink(lambda message: print(f"Error: {message}", file=sys.stderr))
    client = AuthenticatedAPIClient.from_config(config, notification_sink=sink)
    client.add_unauthenticated_callback(
        lambda route: print("Session expired. Please log in again.", file=sys.stderr)
    )
    service = AuthService(client)

    async with client:
        try:
            if args.command == "login":
                password = args.password or getpass.getpass("Password: ")
                user = await service.login(args.email, password)
                print(f"Logged in as {user.name or user.email or user.id}")

            elif args.command == "register":
                password = args.password or getpass.getpass("Password: ")
                user = await service.register(args.first_name, args.last_name, args.email, password)
                print(f"Registered and logged in as {user.name or user.email or user.id}")

            elif args.command == "logout":
                await service.logout()
                print("Logged out")

            elif args.command == "status":
                status = build_status(service)
                if args.json:
                    print(json.dumps(status, indent=2))
                elif status['authenticated']:
                    user = status['user']
                    print(f"Logged in as {user.get('name') or user.get('email') or user.get('id')}")
                    if status['access_token_expires_at']:
                        print(f"Access token expires at {status['access_token_expires_at']}")
                else:
                    print("Not logged in")

            elif args.command == "request":
                body = json.loads(args.data) if args.data else None
                response = await client.request(args.method, args.path, json=body)
                if isinstance(response.data, (dict, list)):
                    print(json.dumps(response.data, indent=2))
                elif response.data is not None:
                    print(response.data)

        except AuthClientError as e:
            # Auth-exempt failures are not sent to the notification sink
            if args.command in ("login", "register"):
                print(f"Error: {e.user_message}", file=sys.stderr)
            logger.debug(f"Command failed: {e.message}")
            return 1

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)

    try:
        config = ClientConfiguration(args.config)
    except AuthClientError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 2

    if args.base_url:
        config.set_override('server.base_url', args.base_url)
    if args.log_file:
        config.set_override('logging.file', args.log_file)

    setup_logging(
        log_level=LogLevel.DEBUG if args.debug else LogLevel(config.get_log_level()),
        log_format=LogFormat(config.get_log_format()),
        log_file=config.get_log_file(),
        audit_file=config.get_audit_file()
    )

    if args.command == "request" and args.data:
        try:
            json.loads(args.data)
        except ValueError as e:
            print(f"Invalid JSON for --data: {e}", file=sys.stderr)
            return 2

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
