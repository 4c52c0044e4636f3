"""CLI entrypoint for the bpfd operator and node agent."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from rich.logging import RichHandler

from bpfd_operator import __version__
from bpfd_operator.config import get_settings
from bpfd_operator.controllers import run_agent, run_operator


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="bpfd operator: reconcile eBPF program intents across a Kubernetes cluster.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "component",
        choices=["operator", "agent"],
        help="Run the cluster-wide operator or the per-node agent",
    )
    parser.add_argument(
        "--kubeconfig",
        type=Path,
        default=None,
        help="Path to kubeconfig (default: in-cluster config, then KUBECONFIG or ~/.kube/config)",
    )
    parser.add_argument(
        "--context",
        default=None,
        help="Kubernetes context to use",
    )
    parser.add_argument(
        "--node-name",
        default=None,
        help="Node this agent manages (default: from env BPFD_OPERATOR_NODE_NAME)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Concurrent reconcile workers per controller",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for bpfd-operator CLI."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    # kubernetes and urllib3 are chatty at DEBUG
    if args.verbose:
        logging.getLogger("urllib3").setLevel(logging.INFO)

    try:
        settings = get_settings()
        if args.kubeconfig:
            settings.kubeconfig = args.kubeconfig
        if args.context:
            settings.context = args.context
        if args.node_name:
            settings.node_name = args.node_name
        if args.workers:
            settings.workers = args.workers

        if args.component == "operator":
            run_operator(settings)
        else:
            run_agent(settings)
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.exception("%s failed", args.component)
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
