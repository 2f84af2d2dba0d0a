"""Entry point for running the periodic checks as a module."""

import argparse
import json
import os
import sys

from paying.config import Config, ConfigurationError
from paying.logging_config import configure_logging, get_logger


def main() -> None:
    """Main entry point for the paying CLI."""
    parser = argparse.ArgumentParser(
        description="Paying - subscription and purchase lifecycle ledger"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    check = subparsers.add_parser("check", help="Run the periodic checks once")
    check.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/paying.yaml"),
        help="Path to paying.yaml configuration file (default: config/paying.yaml)",
    )
    check.add_argument(
        "--service",
        action="append",
        dest="services",
        help="Only check this service (repeatable, default: all services)",
    )
    check.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    check.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=os.getenv("LOG_FORMAT", "json"),
        help="Log output format (default: json)",
    )

    args = parser.parse_args()

    os.environ["LOG_LEVEL"] = args.log_level
    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")
    logger = get_logger("paying")

    from paying.main import create_paying
    from paying.services.paying import UnknownServiceError

    try:
        paying = create_paying(Config(args.config))
        results = paying.run_checks(service_names=args.services)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    except UnknownServiceError as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)

    logger.info("checks_completed", results=results)
    print(json.dumps(results, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
