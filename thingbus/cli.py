"""Command-line interface for thingbus."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from . import constants
from .client import ThingClient, create_client
from .config import ThingbusConfig, load_config
from .core.models import DataSample, SensorDescriptor
from .errors import ThingbusError
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[ThingbusConfig], ThingClient]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="thingbus", description="Manage things over a message broker"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    register_parser = subparsers.add_parser("register", help="Register a thing")
    register_parser.add_argument("device_id")
    register_parser.add_argument("name")

    unregister_parser = subparsers.add_parser("unregister", help="Unregister a thing")
    unregister_parser.add_argument("device_id")

    auth_parser = subparsers.add_parser("auth", help="Authenticate a thing")
    auth_parser.add_argument("device_id")

    subparsers.add_parser("list", help="List registered things")

    schema_parser = subparsers.add_parser(
        "update-schema", help="Replace a thing's schema from a JSON file"
    )
    schema_parser.add_argument("device_id")
    schema_parser.add_argument("schema_file", type=Path)

    publish_parser = subparsers.add_parser("publish", help="Publish sensor data")
    publish_parser.add_argument("device_id")
    publish_parser.add_argument(
        "samples", nargs="+", metavar="SENSOR_ID=VALUE", help="e.g. 0=true 1=21.5"
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def parse_sample(text: str) -> DataSample:
    sensor_id, sep, raw_value = text.partition("=")
    if not sep:
        raise ValueError(f"Expected SENSOR_ID=VALUE, got {text!r}")
    try:
        value = json.loads(raw_value)
    except json.JSONDecodeError:
        value = raw_value
    return DataSample(sensor_id=int(sensor_id), value=value)


def load_schema(path: Path) -> List[SensorDescriptor]:
    with path.open("r", encoding="utf-8") as stream:
        entries = json.load(stream)
    return [SensorDescriptor.from_dict(entry) for entry in entries]


def _operation(args: argparse.Namespace) -> Callable[[ThingClient], Awaitable[Any]]:
    if args.command == "register":
        return lambda client: client.register(args.device_id, args.name)
    if args.command == "unregister":
        return lambda client: client.unregister(args.device_id)
    if args.command == "auth":
        return lambda client: client.auth_device(args.device_id)
    if args.command == "list":
        return lambda client: client.get_devices()
    if args.command == "update-schema":
        schema = load_schema(args.schema_file)
        return lambda client: client.update_schema(args.device_id, schema)
    if args.command == "publish":
        samples = [parse_sample(item) for item in args.samples]
        return lambda client: client.publish_data(args.device_id, samples)
    raise ValueError(f"Unknown command: {args.command}")


async def _run(
    config: ThingbusConfig,
    operation: Callable[[ThingClient], Awaitable[Any]],
    client_factory: ClientFactory,
) -> Any:
    async with client_factory(config) as client:
        return await operation(client)


def main(
    argv: Optional[list[str]] = None,
    *,
    client_factory: ClientFactory = create_client,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    configure_logging(config.logging)

    try:
        operation = _operation(args)
        result = asyncio.run(_run(config, operation, client_factory))
    except (ThingbusError, KeyError, ValueError, OSError) as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 1

    if result is not None:
        print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
