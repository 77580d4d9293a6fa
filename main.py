"""Command-line interface for the multi-bank administration service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from bankadmin.config import BACKEND_SQLITE, CONFIG_ENV, AdminConfig, load_config, resolve_config_path
from bankadmin.database import ShardDatabase

logger = logging.getLogger("bankadmin.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-bank administration utilities")
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to the shard configuration file (defaults to {CONFIG_ENV} or config/shards.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create the tables of every local SQLite shard")
    subparsers.add_parser("shards", help="List the configured shards")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP administration service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the API (default: 8000)",
    )
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "shards"}

    # --config may precede the subcommand.
    prefix: list[str] = []
    if len(args_list) >= 2 and args_list[0] == "--config":
        prefix, args_list = args_list[:2], args_list[2:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args([*prefix, *args_list])
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args([*prefix, *args_list])
            args_list = ["serve", *args_list]

    return parser.parse_args([*prefix, *args_list])


def _load_config(config_arg: str | None) -> tuple[Path, AdminConfig]:
    config_path = resolve_config_path(config_arg or os.getenv(CONFIG_ENV))
    if not config_path.exists():
        raise SystemExit(
            f"Shard configuration not found at {config_path}. Copy config/shards.example.yaml "
            f"to config/shards.yaml or set {CONFIG_ENV}."
        )
    try:
        config = load_config(config_path)
    except ValueError as exc:
        raise SystemExit(f"Invalid shard configuration in {config_path}: {exc}") from exc
    return config_path, config


def _initialise_local_shards(config: AdminConfig) -> int:
    initialised = 0
    for shard in config.registry.list():
        if shard.backend != BACKEND_SQLITE or shard.path is None:
            logger.info("Skipping shard %s (%s backend)", shard.key, shard.backend)
            continue
        ShardDatabase(shard.path).initialize()
        logger.info("Shard %s initialised at %s", shard.key, shard.path)
        initialised += 1
    return initialised


def _print_shards(config: AdminConfig) -> None:
    shards = config.registry.list()
    print(f"{len(shards)} shard(s) configured:")
    print(f"{'Key':<16}  {'Name':<24}  {'Backend':<8}  Location")
    print("-" * 80)
    for shard in shards:
        location = shard.endpoint if shard.endpoint else str(shard.path)
        print(f"{shard.key:<16}  {shard.name:<24}  {shard.backend:<8}  {location}")
    settings = config.settings
    print(
        f"\naccess_policy={settings.access_policy.value} parallel_fanout={settings.parallel_fanout} "
        f"fanout_timeout={settings.fanout_timeout} default_per_page={settings.default_per_page}"
    )


def _serve(
    *,
    config: AdminConfig,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from bankadmin.service import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting administration API on %s://%s:%s", protocol, host, port)

    app = create_app(config=config)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    config_path, config = _load_config(args.config)
    logger.info("Loaded %d shard(s) from %s", len(config.registry), config_path)

    if args.command == "serve":
        _serve(
            config=config,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "init-db":
        count = _initialise_local_shards(config)
        print(f"Initialised {count} local shard database(s).")
    elif args.command == "shards":
        _print_shards(config)


if __name__ == "__main__":
    main()
