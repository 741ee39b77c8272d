#!/usr/bin/env python3
import argparse
import sys

from rollout.config import load_settings
from rollout.services.history_service import HistoryService
from rollout.utils.logging import setup_logger


def main():
    parser = argparse.ArgumentParser(description="Rollout History")
    parser.add_argument("workload", help="Name of the workload")
    parser.add_argument("--limit", type=int, help="Show only the newest N rollouts")
    parser.add_argument("--config", help="Path to the orchestrator configuration file")
    args = parser.parse_args()

    logger = setup_logger("RolloutHistory")

    try:
        settings = load_settings(args.config)
        HistoryService(settings.records_file, args.workload, args.limit).run()
        return 0
    except Exception as e:
        logger.error(f"Reading rollout history failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
