#!/usr/bin/env python3
"""
visitproof Command Line Interface

Usage:
    visitproof secret
    visitproof code --secret <secret> [--at <unix-time>]
    visitproof verify --secret <secret> --code <code> [--at <unix-time>]
    visitproof popup-secret --master <key> --popup <popup-id>
"""

import argparse
import json
import sys

from .totp import derive_popup_secret, generate_qr_code_data, verify_totp
from .util import generate_store_secret


def cmd_secret(args):
    """Generate a new venue secret."""
    print(generate_store_secret())
    return 0


def cmd_code(args):
    """Print the current on-site code for a secret."""
    qr = generate_qr_code_data(args.secret, args.at)
    print(json.dumps(qr.to_dict(), indent=2))
    return 0


def cmd_verify(args):
    """Check a code against a secret."""
    result = verify_totp(args.code, args.secret, args.at)
    if result.valid:
        window = "current" if result.window_offset == 0 else "previous"
        print(f"✓ Code valid ({window} window)")
        return 0
    print("✗ Code invalid", file=sys.stderr)
    return 1


def cmd_popup_secret(args):
    """Derive a venue secret from the master key."""
    print(derive_popup_secret(args.master, args.popup))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="visitproof",
        description="On-site code tools for visitproof venues",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("secret", help="Generate a venue secret")

    code_parser = subparsers.add_parser("code", help="Show the on-site code")
    code_parser.add_argument("--secret", required=True, help="Venue secret")
    code_parser.add_argument("--at", type=float, help="Unix time (default: now)")

    verify_parser = subparsers.add_parser("verify", help="Verify an on-site code")
    verify_parser.add_argument("--secret", required=True, help="Venue secret")
    verify_parser.add_argument("--code", required=True, help="Submitted code")
    verify_parser.add_argument("--at", type=float, help="Unix time (default: now)")

    derive_parser = subparsers.add_parser("popup-secret", help="Derive a venue secret")
    derive_parser.add_argument("--master", required=True, help="Master key (POPUP_SECRET_KEY)")
    derive_parser.add_argument("--popup", required=True, help="Popup ID")

    return parser


COMMANDS = {
    "secret": cmd_secret,
    "code": cmd_code,
    "verify": cmd_verify,
    "popup-secret": cmd_popup_secret,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
