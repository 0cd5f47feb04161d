"""CLI entry point for gridstore."""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from gridstore.config import GridStoreConfig, load_config
from gridstore.logging_config import configure_logging
from gridstore.server import create_app
from gridstore.storage import redact_url

logger = logging.getLogger("gridstore")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    parser = argparse.ArgumentParser(
        prog="gridstore",
        description="gridstore - upload server storing files in chunked blob stores",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("gridstore.yaml"),
        help="Path to YAML configuration file (default: gridstore.yaml)",
    )
    parser.add_argument("--host", default=None, help="Bind address (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="Port (overrides config)")
    parser.add_argument(
        "--url",
        default=None,
        help="Blob store URL, e.g. sqlite:///files.db (overrides config)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    return parser.parse_args(argv)


def apply_overrides(config: GridStoreConfig, args: argparse.Namespace) -> GridStoreConfig:
    """Apply command-line overrides on top of the loaded configuration."""
    overrides = {
        (config.server, "host"): args.host,
        (config.server, "port"): args.port,
        (config.server, "log_level"): args.log_level,
        (config.server, "log_format"): args.log_format,
        (config.storage, "url"): args.url,
    }
    for (section, field), value in overrides.items():
        if value is not None:
            setattr(section, field, value)
    return config


def main(argv: list[str] | None = None) -> None:
    """Load configuration, apply CLI overrides, and serve with uvicorn.

    A missing or invalid config file exits with status 1.
    """
    args = parse_args(argv)

    # Config loading errors are reported before logging is configured
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    apply_overrides(config, args)
    configure_logging(level=config.server.log_level, fmt=config.server.log_format)

    logger.info(
        "Starting gridstore on %s:%d (store=%s, cache=%s)",
        config.server.host,
        config.server.port,
        redact_url(config.storage.url),
        config.storage.cache,
    )

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
    )


if __name__ == "__main__":
    main()
