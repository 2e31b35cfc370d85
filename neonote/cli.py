"""Command line entry point: run the service, edit its config, export notes."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from neonote.config import Config
from neonote.data.database import NotesDatabase
from neonote.data.errors import StorageError
from neonote.data.models import NoteKind
from neonote.data.store import NoteStore

logger = logging.getLogger(__name__)


def _add_config_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--data-dir", help="database directory")
    parser.add_argument("--host", help="address to listen on")
    parser.add_argument("--port", type=int, help="port to listen on")
    parser.add_argument("--api-key", help="key clients send in X-API-Key")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--busy-timeout", type=float, help="seconds to wait for a write lock")
    parser.add_argument("--page-size", type=int, help="default listing page size")


def _apply_overrides(config: Config, args: argparse.Namespace) -> None:
    setters = {
        "data_dir": config.set_data_dir,
        "host": config.set_host,
        "port": config.set_port,
        "api_key": config.set_api_key,
        "log_level": config.set_log_level,
        "busy_timeout": config.set_busy_timeout,
        "page_size": config.set_page_size,
    }
    for name, setter in setters.items():
        value = getattr(args, name, None)
        if value is not None:
            setter(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="neonote", description="neonote notes service")
    parser.add_argument("--config", type=Path, help="config file (default: XDG config dir)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API")
    _add_config_options(serve)

    config = sub.add_parser("config", help="show or change the saved configuration")
    _add_config_options(config)
    config.add_argument("--save", action="store_true", help="write the values to the config file")

    export = sub.add_parser("export", help="print every note as one JSON object per line")
    export.add_argument("--data-dir", help="database directory")
    export.add_argument("--type", choices=[kind.value for kind in NoteKind])
    export.add_argument("--tags", help="comma separated tags a note must all carry")
    return parser


def cmd_serve(config: Config, args: argparse.Namespace) -> int:
    from neonote.api.server import run

    run(config)
    return 0


def cmd_config(config: Config, args: argparse.Namespace) -> int:
    if args.save:
        config.save()
        logger.info(f"Saved config to {config.path}")
    print(f"path: {config.path}")
    print(f"data_dir: {config.data_dir}")
    print(f"host: {config.host}")
    print(f"port: {config.port}")
    print(f"log_level: {config.log_level}")
    print(f"busy_timeout: {config.busy_timeout}")
    print(f"page_size: {config.page_size}")
    return 0


def cmd_export(config: Config, args: argparse.Namespace) -> int:
    from neonote.api.main import to_item_out

    tags = [tag.strip() for tag in (args.tags or "").split(",") if tag.strip()]
    exported = 0
    with NotesDatabase(config.data_dir, busy_timeout=config.busy_timeout) as db:
        store = NoteStore(db)
        for note in store.iter_notes(kind=args.type, tags=tags, page_size=config.page_size):
            print(to_item_out(note).model_dump_json())
            exported += 1
    logger.info(f"Exported {exported} note(s) from {config.data_dir}")
    return 0


_COMMANDS = {
    "serve": cmd_serve,
    "config": cmd_config,
    "export": cmd_export,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = Config(config_path=args.config)
    _apply_overrides(config, args)
    if args.command != "serve":
        # stdout carries command output; logs go to stderr
        logging.basicConfig(
            level=config.log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            stream=sys.stderr,
        )
    try:
        return _COMMANDS[args.command](config, args)
    except StorageError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
