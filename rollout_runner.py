#!/usr/bin/env python3
import argparse
import sys

from rollout.config import load_settings
from rollout.models import ArtifactRef, BuildSource
from rollout.services.rollout_service import RolloutService
from rollout.utils.logging import setup_logger


def parse_overrides(pairs: list[str]) -> dict[str, str]:
    overrides = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid --set value {pair!r}, expected key=value")
        overrides[key] = value
    return overrides


def main():
    parser = argparse.ArgumentParser(description="Rollout Orchestrator")
    parser.add_argument("workload", help="Name of the workload to roll out")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--image", help="Published image pinned by digest, e.g. gcr.io/proj/app@sha256:...")
    source.add_argument("--context", help="Local build context to build and publish")
    parser.add_argument("--repository", help="Target repository for --context builds")
    parser.add_argument("--dockerfile", help="Dockerfile path for --context builds")
    parser.add_argument("--set", dest="overrides", action="append", default=[], metavar="KEY=VALUE",
                        help="Override a template value, e.g. --set replicas=2")
    parser.add_argument("--config", help="Path to the orchestrator configuration file")
    parser.add_argument('--dry-run', action='store_true', help='Print the resolved manifests without making any changes')
    args = parser.parse_args()

    logger = setup_logger("RolloutRunner")

    try:
        if args.image:
            artifact = ArtifactRef.parse(args.image)
        elif args.repository:
            artifact = BuildSource(context=args.context, repository=args.repository, dockerfile=args.dockerfile)
        else:
            parser.error("--repository is required with --context")
        settings = load_settings(args.config)
        logger.info(f"Starting rollout of {args.workload} with template {settings.template_file}")
        service = RolloutService(settings, args.workload, artifact, parse_overrides(args.overrides), args.dry_run)
        service.run()
        logger.info("Rollout run completed successfully")
        return 0
    except Exception as e:
        logger.error(f"Rollout run failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
