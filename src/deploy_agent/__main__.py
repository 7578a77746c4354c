"""CLI entrypoints for the deploy agent (deploy-agent serve, deploy-agent push)."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def main():
    parser = argparse.ArgumentParser(prog="deploy-agent", description="Webhook deploy agent")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("serve", help="Run the deploy webhook server")

    cmd_push = sub.add_parser("push", help="Sign and upload a bundle to a deploy agent")
    cmd_push.add_argument("url", help="Deploy agent URL, e.g. https://deploy.example.com/")
    cmd_push.add_argument("bundle", help="Path to a .zip bundle or a directory to zip")
    cmd_push.add_argument("--repository", required=True, help="Repository id of the target")
    cmd_push.add_argument("--run-id", required=True, help="Unique run id (release directory suffix)")
    cmd_push.add_argument(
        "--secret",
        default=os.getenv("DEPLOY_SECRET"),
        help="Shared secret (defaults to DEPLOY_SECRET)",
    )
    cmd_push.add_argument("--timeout", type=float, default=600.0, help="Request timeout in seconds")

    args = parser.parse_args()

    if args.cmd == "push":
        from deploy_agent.client import build_bundle, push_bundle
        from deploy_agent.utils.logging import setup_logging

        if not args.secret:
            print("ERROR: --secret or DEPLOY_SECRET is required", file=sys.stderr)
            sys.exit(2)

        setup_logging("WARNING", "console")
        bundle_path = Path(args.bundle)
        bundle = build_bundle(bundle_path) if bundle_path.is_dir() else bundle_path.read_bytes()
        result = push_bundle(
            args.url,
            args.repository,
            args.secret,
            args.run_id,
            bundle,
            timeout=args.timeout,
        )
        if result.out:
            print(result.out)
        if not result.ok:
            print(f"ERROR ({result.status_code}): {result.message}", file=sys.stderr)
            sys.exit(1)
        return

    # Default: serve
    from deploy_agent.main import run
    run()


if __name__ == "__main__":
    main()
