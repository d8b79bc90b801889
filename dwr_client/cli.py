"""CLI entry point for dwr-client.

Handles argument parsing and dispatches to session or call mode.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from dwr_client.client import DWRClient, DWRError
from dwr_client.config_loader import ConfigError, get_target, load_runtime_config
from dwr_client.models import ClientConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def positive_float(value: str) -> float:
    """Parse and validate a positive float value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive number.
    """
    try:
        result = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid number '{value}'.")
    if result <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive, got {result}.")
    return result


def key_value(value: str) -> tuple[str, str]:
    """Parse KEY=VALUE format. Only the first '=' splits.

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    key, sep, val = value.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(
            f"Invalid format '{value}'. Expected KEY=VALUE (e.g., 'c0-param0=string:42')"
        )
    if not key:
        raise argparse.ArgumentTypeError(
            f"Invalid format '{value}'. Key cannot be empty."
        )
    return (key, val)


def _build_param_map(pairs: list[tuple[str, str]]) -> dict[str, str]:
    """Build a parameter dict, warning on duplicates."""
    result: dict[str, str] = {}
    for key, val in pairs:
        if key in result:
            print(
                f"Warning: parameter '{key}' specified multiple times, using last value",
                file=sys.stderr,
            )
        result[key] = val
    return result


@dataclass
class TargetArgs:
    """Where to connect: either a base URL or a named target from a config file."""

    base_url: str | None
    base_params: dict[str, str]
    config: Path | None
    target: str | None
    timeout: float | None
    verbose: bool


@dataclass
class SessionArgs(TargetArgs):
    """Parsed arguments for session mode."""


@dataclass
class CallArgs(TargetArgs):
    """Parsed arguments for call mode."""

    script: str = ""
    method: str = ""
    page: str = ""
    params: dict[str, str] = field(default_factory=dict)
    show_status: bool = False


def _add_target_arguments(parser: argparse.ArgumentParser) -> None:
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--base-url",
        help="Base URL of the web application (e.g., https://example.com/app)",
    )
    source.add_argument(
        "--config",
        type=Path,
        help="Path to YAML config file with targets",
    )
    parser.add_argument(
        "--target",
        help="Target name from the config file (required with --config)",
    )
    parser.add_argument(
        "--base-param",
        type=key_value,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        dest="base_param",
        help="Parameter sent with every call (can be repeated, only with --base-url)",
    )
    parser.add_argument(
        "--timeout",
        type=positive_float,
        default=None,
        help="Transport timeout in seconds (default: 30, or the target's setting)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log protocol activity to stderr",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with session and call subcommands."""
    parser = argparse.ArgumentParser(
        prog="dwr-client",
        description="Client for Direct Web Remoting (DWR) endpoints.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Mode")

    session_parser = subparsers.add_parser(
        "session",
        help="Negotiate a DWR session and print the script session ID",
    )
    _add_target_arguments(session_parser)

    call_parser = subparsers.add_parser(
        "call",
        help="Negotiate a session, make one plain call and print the raw reply",
    )
    _add_target_arguments(call_parser)
    call_parser.add_argument(
        "--script",
        required=True,
        help="Remote script name (e.g., MySvcAjax)",
    )
    call_parser.add_argument(
        "--method",
        required=True,
        help="Remote method name (e.g., getData)",
    )
    call_parser.add_argument(
        "--page",
        default="",
        help="Page the call originates from (e.g., /app/info.do)",
    )
    call_parser.add_argument(
        "--param",
        type=key_value,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        dest="param",
        help="Per-call parameter, e.g. c0-param0=string:42 (can be repeated)",
    )
    call_parser.add_argument(
        "--show-status",
        action="store_true",
        help="Print the HTTP status line to stderr before the body",
    )

    return parser


def _target_fields(namespace: argparse.Namespace) -> dict:
    return {
        "base_url": namespace.base_url,
        "base_params": _build_param_map(namespace.base_param or []),
        "config": namespace.config,
        "target": namespace.target,
        "timeout": namespace.timeout,
        "verbose": namespace.verbose,
    }


def parse_session_args(namespace: argparse.Namespace) -> SessionArgs:
    """Convert parsed namespace to SessionArgs dataclass."""
    return SessionArgs(**_target_fields(namespace))


def parse_call_args(namespace: argparse.Namespace) -> CallArgs:
    """Convert parsed namespace to CallArgs dataclass."""
    return CallArgs(
        **_target_fields(namespace),
        script=namespace.script,
        method=namespace.method,
        page=namespace.page,
        params=_build_param_map(namespace.param or []),
        show_status=namespace.show_status,
    )


def parse_args(args: list[str] | None = None) -> SessionArgs | CallArgs:
    """Parse command-line arguments and return typed args dataclass.

    Args:
        args: Command-line arguments to parse. If None, uses sys.argv[1:].

    Returns:
        SessionArgs or CallArgs depending on the subcommand.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if namespace.config is not None and not namespace.target:
        parser.error("--target is required with --config")
    if namespace.config is None and namespace.target:
        parser.error("--target requires --config")
    if namespace.config is not None and namespace.base_param:
        parser.error("--base-param cannot be combined with --config")

    if namespace.command == "session":
        return parse_session_args(namespace)
    elif namespace.command == "call":
        return parse_call_args(namespace)
    else:
        # Should not happen with required=True on subparsers
        parser.error(f"Unknown command: {namespace.command}")


def resolve_client_config(args: TargetArgs) -> ClientConfig:
    """Build the ClientConfig for the selected target.

    Raises:
        ConfigError: If the config file or target is invalid.
    """
    if args.config is not None:
        config = get_target(load_runtime_config(args.config), args.target or "")
        if args.timeout is not None:
            config = config.model_copy(update={"timeout": args.timeout})
        return config

    fields: dict = {"base_url": args.base_url, "base_params": args.base_params}
    if args.timeout is not None:
        fields["timeout"] = args.timeout
    return ClientConfig(**fields)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def main() -> int:
    """Main entry point."""
    try:
        parsed = parse_args()
        configure_logging(parsed.verbose)
        return dispatch(parsed)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


def dispatch(parsed: SessionArgs | CallArgs) -> int:
    """Run the mode matching the parsed arguments."""
    if isinstance(parsed, CallArgs):
        return run_call(parsed)
    return run_session(parsed)


def _connect(args: TargetArgs) -> DWRClient | None:
    """Load the target config and negotiate a session, printing errors to stderr."""
    try:
        config = resolve_client_config(args)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None
    except ValueError as e:
        # pydantic.ValidationError subclasses ValueError
        print(f"Error: {e}", file=sys.stderr)
        return None

    try:
        return DWRClient.from_config(config)
    except DWRError as e:
        print(f"Error: {e}", file=sys.stderr)
    except httpx.HTTPError as e:
        print(f"Error: handshake request failed: {e}", file=sys.stderr)
    return None


def run_session(args: SessionArgs) -> int:
    """Run session mode: print the negotiated script session ID."""
    client = _connect(args)
    if client is None:
        return 1

    with client:
        print(client.session_id)
    return 0


def run_call(args: CallArgs) -> int:
    """Run call mode: make one plain call and write the raw reply bytes to stdout.

    Returns 0 for 1xx-3xx replies and 1 otherwise.
    """
    client = _connect(args)
    if client is None:
        return 1

    with client:
        try:
            response = client.request(
                args.page, args.script, args.method, extra_params=args.params
            )
        except DWRError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        except httpx.HTTPError as e:
            print(f"Error: request failed: {e}", file=sys.stderr)
            return 1

        try:
            try:
                response.read()
            except httpx.HTTPError as e:
                print(f"Error: reading reply failed: {e}", file=sys.stderr)
                return 1
            if args.show_status:
                print(
                    f"{response.http_version} {response.status_code} {response.reason_phrase}",
                    file=sys.stderr,
                )
            sys.stdout.flush()
            sys.stdout.buffer.write(response.content)
            sys.stdout.buffer.flush()
        finally:
            response.close()

    return 0 if response.status_code < 400 else 1


if __name__ == "__main__":
    sys.exit(main())
