"""RolloutGate CLI entrypoint.

Usage:
    python -m rolloutgate                          # Start the server
    python -m rolloutgate --preview 35             # Print the plan for a risk score
    python -m rolloutgate --list                   # List rollouts on a running server
    python -m rolloutgate --show ID                # Show a rollout and its decision log
    python -m rolloutgate --abort ID --reason R    # Abort a rollout
    python -m rolloutgate --approve ID --phase N   # Approve a staged phase
    python -m rolloutgate --deny ID --phase N      # Deny a staged phase
    python -m rolloutgate --freeze TARGET          # Abort and block rollouts of a target
    python -m rolloutgate --unfreeze-all           # Lift a system-wide freeze
    python -m rolloutgate --version                # Print version
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from rolloutgate.client import RolloutGateAPIError, RolloutGateClient
from rolloutgate.errors import InvalidRiskScore
from rolloutgate.models import default_rollback_plan
from rolloutgate.strategy import select_strategy


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _run_client(
    base_url: str,
    admin_key: str,
    action: Callable[[RolloutGateClient], Awaitable[dict[str, Any]]],
) -> int:
    async def run() -> int:
        async with RolloutGateClient(base_url, api_key=admin_key or None) as client:
            try:
                result = await action(client)
            except RolloutGateAPIError as exc:
                print(str(exc), file=sys.stderr)
                return 1
        _print_json(result)
        return 0

    return asyncio.run(run())


def main() -> None:
    """CLI entrypoint."""
    from rolloutgate import __version__

    parser = argparse.ArgumentParser(
        prog="rolloutgate",
        description="RolloutGate: risk-gated progressive delivery controller",
    )
    parser.add_argument(
        "--version", "-v", action="version", version=f"RolloutGate {__version__}"
    )
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--preview",
        type=float,
        metavar="RISK_SCORE",
        help="Print the rollout plan a risk score would produce",
    )
    mode_group.add_argument("--list", action="store_true", help="List rollouts")
    mode_group.add_argument("--show", metavar="ID", help="Show a rollout by ID")
    mode_group.add_argument("--abort", metavar="ID", help="Abort a rollout by ID")
    mode_group.add_argument("--approve", metavar="ID", help="Approve a phase of a rollout")
    mode_group.add_argument("--deny", metavar="ID", help="Deny a phase of a rollout")
    mode_group.add_argument(
        "--freeze", metavar="TARGET", help="Abort and block rollouts of a target"
    )
    mode_group.add_argument("--unfreeze", metavar="TARGET", help="Lift a target freeze")
    mode_group.add_argument(
        "--freeze-all", action="store_true", help="Abort and block every rollout"
    )
    mode_group.add_argument("--unfreeze-all", action="store_true", help="Lift a system-wide freeze")
    parser.add_argument(
        "--base-url",
        default=os.getenv("ROLLOUTGATE_URL", "http://localhost:8000"),
        help="Base URL of a running server (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--admin-key",
        default=os.getenv("ROLLOUTGATE_ADMIN_API_KEY", ""),
        help="Admin API key for privileged commands",
    )
    parser.add_argument("--target", default=None, help="Filter --list by target")
    parser.add_argument("--reason", default=None, help="Reason for --abort and the freeze commands")
    parser.add_argument("--phase", type=int, default=None, help="Phase index for --approve/--deny")
    parser.add_argument(
        "--approver",
        default=os.getenv("USER", "cli"),
        help="Approver identity for --approve/--deny",
    )
    parser.add_argument("--comment", default=None, help="Comment for --approve/--deny")
    parser.add_argument(
        "--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)"  # nosec B104
    )
    parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind to (default: 8000)"
    )

    args = parser.parse_args()

    if args.abort and not args.reason:
        parser.error("--reason is required for --abort")
    if (args.approve or args.deny) and args.phase is None:
        parser.error("--phase is required for --approve/--deny")
    admin_command = (
        args.abort or args.approve or args.deny or args.freeze or args.unfreeze
        or args.freeze_all or args.unfreeze_all
    )
    if admin_command and not args.admin_key:
        parser.error("--admin-key (or ROLLOUTGATE_ADMIN_API_KEY) required for admin commands")

    if args.preview is not None:
        try:
            plan = select_strategy(
                args.preview,
                target="preview",
                rollback_plan=default_rollback_plan("preview"),
            )
        except InvalidRiskScore as exc:
            parser.error(str(exc))
        _print_json(plan.model_dump(mode="json"))
        sys.exit(0)
    elif args.list:
        sys.exit(
            _run_client(
                args.base_url,
                args.admin_key,
                lambda client: client.list_rollouts(target=args.target),
            )
        )
    elif args.show:
        sys.exit(
            _run_client(
                args.base_url, args.admin_key, lambda client: client.get_rollout(args.show)
            )
        )
    elif args.abort:
        sys.exit(
            _run_client(
                args.base_url,
                args.admin_key,
                lambda client: client.abort_rollout(args.abort, args.reason),
            )
        )
    elif args.approve or args.deny:
        rollout_id = args.approve or args.deny
        sys.exit(
            _run_client(
                args.base_url,
                args.admin_key,
                lambda client: client.decide_approval(
                    rollout_id,
                    phase_index=args.phase,
                    approved=bool(args.approve),
                    approver=args.approver,
                    comment=args.comment,
                ),
            )
        )
    elif args.freeze or args.unfreeze:
        target = args.freeze or args.unfreeze
        sys.exit(
            _run_client(
                args.base_url,
                args.admin_key,
                lambda client: (
                    client.freeze_target(target, args.reason)
                    if args.freeze
                    else client.unfreeze_target(target)
                ),
            )
        )
    elif args.freeze_all or args.unfreeze_all:
        sys.exit(
            _run_client(
                args.base_url,
                args.admin_key,
                lambda client: (
                    client.freeze_system(args.reason)
                    if args.freeze_all
                    else client.unfreeze_system()
                ),
            )
        )
    else:
        import uvicorn


        uvicorn.run(
            "rolloutgate.main:app",
            host=args.host,
            port=args.port,
            reload=False,
        )


if __name__ == "__main__":
    main()
