"""Console entry point for the CI worker fleet controller."""

from __future__ import annotations

import argparse
import json
import sys
from concurrent.futures import wait
from typing import List

from config import FleetConfig
from fleet import ProvisioningError
from log_utils import setup_logging
from matcher import NoConfigurationError
from models import DEFAULT_LAUNCH_TIMEOUT_SECONDS, DEFAULT_NUM_EXECUTORS
from service import FleetService


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Elastic CI worker fleet controller for Compute Engine"
    )
    parser.add_argument("--project", required=True, help="GCP project ID")
    parser.add_argument("--credentials-file", help="Service account JSON key file")
    parser.add_argument("--controller-name", default="fleet")
    parser.add_argument(
        "--fleet-id",
        help="Fleet id the instances are labeled with (required for --reconcile/--status)",
    )
    parser.add_argument("--instance-cap", type=int, help="Maximum instances in the fleet")

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--reconcile", action="store_true", help="Delete orphaned instances")
    mode.add_argument("--status", action="store_true", help="List fleet instances")
    mode.add_argument("--provision", metavar="LABEL", help="Provision workers for a label")
    parser.add_argument("--count", type=int, default=1, help="Executors to provision")
    parser.add_argument("--dry-run", action="store_true", help="Simulate / only check")

    template = parser.add_argument_group("worker template")
    template.add_argument("--templates-file", help="JSON file with a list of templates")
    template.add_argument("--name-prefix")
    template.add_argument("--description")
    template.add_argument("--zone")
    template.add_argument("--machine-type", default="n1-standard-1")
    template.add_argument("--labels", default="")
    template.add_argument("--executors", type=int, default=DEFAULT_NUM_EXECUTORS)
    template.add_argument("--image", help="Boot disk source image")
    template.add_argument("--one-shot", action="store_true")
    template.add_argument("--preemptible", action="store_true")
    template.add_argument(
        "--launch-timeout", type=int, default=DEFAULT_LAUNCH_TIMEOUT_SECONDS
    )

    parser.add_argument("--agent-jar", help="Agent jar copied to each worker")
    parser.add_argument("--launch-pool-size", type=int, default=10)
    parser.add_argument("--reconcile-interval", type=int, default=3600)
    parser.add_argument("--verbose", action="store_true")
    return parser


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    if (args.reconcile or args.status) and not args.fleet_id:
        parser.error("--fleet-id is required with --reconcile and --status")

    setup_logging(verbose=args.verbose, log_file="fleet-controller.log")

    try:
        config = FleetConfig.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    service = FleetService(config)
    controller = service.add_controller()

    try:
        if args.reconcile:
            result = service.reconciler.run()
            print(json.dumps(result.to_dict(), indent=2))
            return 1 if result.failed else 0

        if args.status:
            instances = controller.client.list_instances_by_label(controller.fleet_labels())
            for instance in instances:
                print(f"{instance.get('name')}\t{instance.get('status')}")
            return 0

        if not config.templates:
            parser.error("--provision needs --templates-file or --name-prefix and --zone")
        if args.dry_run:
            matched = controller.matcher.candidates(args.provision)
            print(json.dumps([t.description for t in matched], indent=2))
            return 0 if matched else 1

        try:
            pending = service.provision(args.provision, args.count)
        except (NoConfigurationError, ProvisioningError) as e:
            print(f"Provisioning failed: {e}", file=sys.stderr)
            return 1
        wait([p.future for p in pending])
        failed = [p.name for p in pending if p.future.exception() is not None]
        for p in pending:
            print(f"{p.name}\t{'FAILED' if p.name in failed else 'ONLINE'}")
        return 1 if failed else 0
    finally:
        service.stop()
