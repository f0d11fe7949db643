#!/usr/bin/env python3
"""Log in against an authority, print the principal, optionally refresh, log out.

Usage:
    # Password login (add --totp when the account has 2FA enabled):
    PROBE_EMAIL=coach@example.com PROBE_PASSWORD=secret python scripts/session_probe.py

    # PIN login for a coach account on a specific tenant:
    python scripts/session_probe.py --username coach1 --pin 123456 --url https://herlev.example.dk/

    # Exercise one refresh before logging out:
    python scripts/session_probe.py --email coach@example.com --password secret --refresh

Environment Variables:
    PROBE_EMAIL / PROBE_PASSWORD: Credentials for a password login
    RUNDEKLAR_AUTHORITY_URL: Authority base URL (default http://127.0.0.1:3000/api)
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def probe(args: argparse.Namespace) -> dict:
    """Run one login/refresh/logout cycle and report what happened."""
    # Import here so the environment tweaks in main() apply to settings
    from rundeklar.service.errors import SecondFactorRequired
    from rundeklar.service.runtime import Runtime

    runtime = Runtime(url=args.url)
    report: dict = {"tenant_id": runtime.binding.tenant_id}
    try:
        try:
            if args.username:
                principal = await runtime.session.login_with_short_secret(args.username, args.pin)
            else:
                principal = await runtime.session.login_with_password(
                    args.email, args.password, args.totp
                )
        except SecondFactorRequired:
            report["status"] = "second_factor_required"
            return report

        report["principal"] = dataclasses.asdict(principal)
        report["status"] = "authenticated"

        if args.refresh:
            outcome = await runtime.coordinator.refresh()
            report["refresh"] = outcome.value

        await runtime.session.logout()
        report["logged_out"] = runtime.session.principal.value is None
        return report
    finally:
        await runtime.aclose()


def main():
    parser = argparse.ArgumentParser(
        description="Probe a Rundeklar authority with one session lifecycle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("PROBE_EMAIL"),
        help="Account email (or set PROBE_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("PROBE_PASSWORD"),
        help="Account password (or set PROBE_PASSWORD env var)",
    )
    parser.add_argument("--totp", default=None, help="Second-factor code, if required")
    parser.add_argument("--username", default=None, help="Coach username for PIN login")
    parser.add_argument("--pin", default=None, help="Six-digit PIN for PIN login")
    parser.add_argument("--url", default=None, help="Application URL the tenant is resolved from")
    parser.add_argument("--authority", default=None, help="Authority base URL")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Exercise one refresh before logging out",
    )

    args = parser.parse_args()

    if args.username:
        if not args.pin:
            print("Error: --pin is required with --username")
            sys.exit(1)
    elif not args.email or not args.password:
        print("Error: --email/--password (or PROBE_EMAIL/PROBE_PASSWORD) required")
        sys.exit(1)

    if args.authority:
        os.environ["RUNDEKLAR_AUTHORITY_URL"] = args.authority
    # Never leave probe credentials on disk
    os.environ.setdefault("RUNDEKLAR_MEMORY_STORAGE", "true")

    try:
        result = asyncio.run(probe(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    if result.get("status") != "authenticated":
        sys.exit(2)


if __name__ == "__main__":
    main()
