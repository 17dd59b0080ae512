"""
CLI interface for sshlink.

Usage:
    python -m sshlink user@host                     # Connect and authenticate
    python -m sshlink -p 2222 -i keyfile user@host
    python -m sshlink --ls /var/log user@host       # List a remote directory
    python -m sshlink --get /etc/hostname . user@host
    python -m sshlink --put build.tar.gz /srv user@host
    python -m sshlink --events user@host            # JSONL events to stderr
    python -m sshlink --help
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from sshlink.host_key import HostIdentity, TrustResult

MAX_PASSWORD_PROMPTS = 3


def cli_host_key_callback(hostname: str, identity: HostIdentity, result: TrustResult) -> bool:
    """
    Ask the user whether to trust a host key.

    Changed keys are always refused; unknown keys need an explicit yes.
    """
    if result == TrustResult.MISMATCH:
        print(
            "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@\n"
            "@    WARNING: REMOTE HOST IDENTIFICATION HAS CHANGED!     @\n"
            "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@",
            file=sys.stderr,
        )
        print(
            f"The {identity.key_type.value} key sent by {hostname} is "
            f"{identity.fingerprint_sha256}.",
            file=sys.stderr,
        )
        print("Host key verification failed.", file=sys.stderr)
        return False

    print(
        f"The authenticity of host '{hostname}' can't be established.",
        file=sys.stderr,
    )
    print(
        f"{identity.key_type.value} key fingerprint is {identity.fingerprint_sha256}.",
        file=sys.stderr,
    )
    while True:
        try:
            response = input("Are you sure you want to continue connecting (yes/no)? ")
        except (EOFError, KeyboardInterrupt):
            print("\nHost key verification failed.", file=sys.stderr)
            return False
        response = response.strip().lower()
        if response in ("yes", "y"):
            return True
        if response in ("no", "n"):
            print("Host key verification failed.", file=sys.stderr)
            return False
        print("Please type 'yes' or 'no': ", end="", file=sys.stderr)


def parse_target(target: str) -> tuple[str, str | None]:
    """
    Parse user@host target string.

    Returns:
        Tuple of (host, username) where username may be None.
    """
    if "@" in target:
        username, host = target.rsplit("@", 1)
        return host, username
    return target, None


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the sshlink CLI."""
    parser = argparse.ArgumentParser(
        prog="sshlink",
        description="Event-driven SSH session client",
        epilog="Example: python -m sshlink --ls /tmp user@host",
    )

    parser.add_argument(
        "target",
        metavar="[user@]host",
        help="Target host (optionally with username)",
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="SSH port (default: from ssh config, else 22)",
    )

    parser.add_argument(
        "-l", "--login",
        metavar="USER",
        help="Login username (alternative to user@host)",
    )

    parser.add_argument(
        "-i", "--identity",
        metavar="FILE",
        help="Private key file for authentication",
    )

    parser.add_argument(
        "-F", "--config",
        metavar="FILE",
        help="Alternative ssh config file",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="TCP connect timeout in seconds",
    )

    parser.add_argument(
        "--retries",
        type=int,
        default=None,
        help="Extra connect attempts after a timeout or refusal",
    )

    parser.add_argument(
        "--no-strict",
        action="store_true",
        help="Trust unknown host keys on first use without asking",
    )

    parser.add_argument(
        "--known-hosts",
        metavar="FILE",
        help="known_hosts file (default: ~/.ssh/known_hosts)",
    )

    operation = parser.add_mutually_exclusive_group()
    operation.add_argument(
        "--ls",
        metavar="PATH",
        help="List a remote directory over SFTP",
    )
    operation.add_argument(
        "--get",
        nargs=2,
        metavar=("REMOTE", "LOCAL"),
        help="Download a remote file over SFTP",
    )
    operation.add_argument(
        "--put",
        nargs=2,
        metavar=("LOCAL", "REMOTE"),
        help="Upload a local file over SFTP",
    )

    parser.add_argument(
        "--events",
        action="store_true",
        help="Print session events as JSONL to stderr",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only report errors",
    )

    return parser


def _configure_logging(args: argparse.Namespace) -> None:
    if args.quiet:
        level = logging.ERROR
    elif args.verbose >= 2:
        level = logging.DEBUG
    elif args.verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


async def run(args: argparse.Namespace) -> int:
    """
    Connect, authenticate and run the requested operation.

    Returns:
        0 on success, 1 on any error
    """
    from sshlink import (
        AuthMethod,
        ConnectPolicy,
        ErrorKind,
        SFTPChannel,
        SSHConfig,
        SSHError,
        SSHSession,
    )

    _configure_logging(args)

    host, username = parse_target(args.target)
    username = args.login or username

    ssh_config = SSHConfig(config_files=[args.config]) if args.config else SSHConfig()
    host_config = ssh_config.lookup(host)
    username = host_config.get_user(username)

    kwargs: dict = {}
    if args.timeout is not None or args.retries is not None:
        policy = host_config.connect_policy()
        kwargs["connect_policy"] = ConnectPolicy(
            timeout_sec=args.timeout if args.timeout is not None else policy.timeout_sec,
            retries=args.retries if args.retries is not None else policy.retries,
        )
    if args.no_strict:
        kwargs["strict_host_key_checking"] = False
    else:
        kwargs["host_key_callback"] = cli_host_key_callback
    if args.known_hosts:
        kwargs["known_hosts"] = args.known_hosts

    try:
        session = SSHSession.from_config(host, ssh_config, username=username, **kwargs)
    except (SSHError, ValueError) as e:
        print(f"sshlink: {e}", file=sys.stderr)
        return 1

    if args.events:
        session.subscribe(lambda event: print(event.to_json(), file=sys.stderr))

    port = args.port if args.port is not None else host_config.get_port()
    try:
        if args.identity:
            session.set_keys_from_files(args.identity)

        kind = await session.connect_to_host(
            username,
            host_config.get_hostname(host),
            port,
        )

        prompts = 0
        while (
            kind == ErrorKind.AUTHENTICATION_ERROR
            and AuthMethod.PASSWORD in session.available_methods
            and prompts < MAX_PASSWORD_PROMPTS
        ):
            prompts += 1
            try:
                password = getpass.getpass(f"{session.username}@{session.host}'s password: ")
            except (EOFError, KeyboardInterrupt):
                print(file=sys.stderr)
                break
            session.set_password(password)
            kind = await session.wait_ready()

        if kind != ErrorKind.NO_ERROR:
            message = session.connect_error_message or kind.value
            print(f"sshlink: {session.host}:{session.port}: {message}", file=sys.stderr)
            return 1

        if args.ls is not None or args.get or args.put:
            sftp = SFTPChannel(session)
            try:
                if args.ls is not None:
                    for name in await sftp.dir(args.ls):
                        print(name)
                elif args.get:
                    remote, local = args.get
                    if not await sftp.get(remote, Path(local)):
                        print(f"sshlink: {local} exists, not overwritten", file=sys.stderr)
                        return 1
                else:
                    local, remote = args.put
                    print(await sftp.send(Path(local), remote))
            finally:
                sftp.close()
        elif not args.quiet:
            print(f"Connected to {session.host}:{session.port} as {session.username}")

        return 0

    except (SSHError, ValueError) as e:
        print(f"sshlink: {e}", file=sys.stderr)
        return 1
    finally:
        session.close()


def main() -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args()

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
