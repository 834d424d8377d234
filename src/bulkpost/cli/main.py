# main.py
# SPDX-License-Identifier: MIT

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Optional, Sequence

from ..core.config import RECORD_TYPES, RunConfig, apply_overrides, load_config_from_path
from ..core.formats import FORMATS
from ..core.log import configure_logging
from ..core.pipeline import run_import
from ..core.state import REGION_HOSTS


def _build_parser() -> argparse.ArgumentParser:
    """Build the top-level bulkpost CLI argument parser.

    Returns:
        argparse.ArgumentParser: Configured argument parser for the CLI.
    """
    parser = argparse.ArgumentParser(prog="bulkpost", description="Bulk record importer")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g., DEBUG, INFO, WARNING). Overrides the config file.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    imp = subparsers.add_parser("import", help="Import records from files, directories, or cloud URLs.")
    imp.add_argument("data", nargs="+", help="Input path(s), directory, or cloud URL(s).")
    imp.add_argument("-c", "--config", help="Path to config file (TOML or JSON).")
    imp.add_argument("--type", dest="record_type", choices=list(RECORD_TYPES), help="Record type.")
    imp.add_argument("--region", choices=sorted(REGION_HOSTS), help="Ingestion region.")
    imp.add_argument("--base-url", help="Override the regional endpoint host.")
    imp.add_argument("--project-id", help="Project id sent with each request.")
    imp.add_argument("--table-id", dest="lookup_table_id", help="Lookup table id (table uploads).")
    imp.add_argument("--group-key", help="Group key stamped on group profiles.")

    creds = imp.add_argument_group("credentials")
    creds.add_argument("--token", help="Project token.")
    creds.add_argument("--secret", help="API secret.")
    creds.add_argument("--acct", help="Service account user name.")
    creds.add_argument("--pass", dest="password", help="Service account secret.")
    creds.add_argument("--project", help="Project id for service accounts.")
    creds.add_argument("--bearer", help="Bearer token.")

    imp.add_argument("--workers", type=int, help="Concurrent senders.")
    imp.add_argument("--records-per-batch", type=int, help="Records per request.")
    imp.add_argument("--bytes-per-batch", type=int, help="Bytes per request (before compression).")
    imp.add_argument("--retries", dest="max_retries", type=int, help="Retries per batch.")
    imp.add_argument("--format", dest="stream_format", choices=list(FORMATS), help="Force the input format.")
    imp.add_argument("--gzip", action=argparse.BooleanOptionalAction, default=None,
                     help="Force or forbid gzip decompression.")
    imp.add_argument("--strict", action=argparse.BooleanOptionalAction, default=None,
                     help="Ask the endpoint to validate records strictly.")
    imp.add_argument("--fix-data", action="store_true", default=None, help="Fix common record-shape problems.")
    imp.add_argument("--remove-nulls", action="store_true", default=None, help="Drop empty property values.")
    imp.add_argument("--offset", dest="time_offset_hours", type=float, help="Shift event times by N hours.")
    imp.add_argument("--dedupe", action="store_true", default=None, help="Drop records already seen in this run.")
    imp.add_argument("--epoch-start", type=int, help="Drop events before this Unix time (seconds).")
    imp.add_argument("--epoch-end", type=int, help="Drop events after this Unix time (seconds).")
    imp.add_argument("--events", dest="event_allowlist", nargs="+", help="Only import these event names.")
    imp.add_argument("--skip-events", dest="event_denylist", nargs="+", help="Never import these event names.")
    imp.add_argument("--scrub-props", nargs="+", help="Property keys to delete, at any depth.")
    imp.add_argument("--flatten", dest="flatten_data", action="store_true", default=None,
                     help="Flatten nested properties into dotted keys.")
    imp.add_argument("--dry-run", action="store_true", default=None, help="Batch records without sending.")
    imp.add_argument("--adaptive", action="store_true", default=None, help="Tune workers from record size.")
    imp.add_argument("--throttle", action="store_true", default=None, help="Buffer input with memory backpressure.")
    imp.add_argument("--log", dest="log_path", help="Write a JSONL run log to this path.")
    imp.add_argument("--progress", dest="show_progress", action="store_true", default=None,
                     help="Log a throughput line every few seconds.")
    imp.add_argument("--quiet", action="store_true", help="Only log warnings and errors.")

    show = subparsers.add_parser("show-config", help="Validate a config file and print it.")
    show.add_argument("-c", "--config", required=True, help="Path to config file (TOML or JSON).")
    return parser


def _import_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Collect CLI flags into dotted config overrides; unset flags are None."""
    return {
        "target.record_type": args.record_type,
        "target.region": args.region,
        "target.base_url": args.base_url,
        "target.project_id": args.project_id,
        "target.lookup_table_id": args.lookup_table_id,
        "target.group_key": args.group_key,
        "target.strict": args.strict,
        "auth.token": args.token,
        "auth.secret": args.secret,
        "auth.acct": args.acct,
        "auth.password": args.password,
        "auth.project": args.project,
        "auth.bearer": args.bearer,
        "dispatch.workers": args.workers,
        "dispatch.max_retries": args.max_retries,
        "dispatch.dry_run": args.dry_run,
        "batch.records_per_batch": args.records_per_batch,
        "batch.bytes_per_batch": args.bytes_per_batch,
        "source.stream_format": args.stream_format,
        "source.gzip": args.gzip,
        "transform.fix_data": args.fix_data,
        "transform.remove_nulls": args.remove_nulls,
        "transform.time_offset_hours": args.time_offset_hours,
        "transform.dedupe": args.dedupe,
        "transform.epoch_start": args.epoch_start,
        "transform.epoch_end": args.epoch_end,
        "transform.event_allowlist": args.event_allowlist,
        "transform.event_denylist": args.event_denylist,
        "transform.scrub_props": args.scrub_props,
        "transform.flatten_data": args.flatten_data,
        "adaptive.enabled": args.adaptive,
        "throttle.enabled": args.throttle,
        "log_path": args.log_path,
        "show_progress": args.show_progress,
        "verbose": False if args.quiet else None,
    }


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _dispatch(args: argparse.Namespace) -> int:
    """Run the selected subcommand and return a process exit code."""
    cmd = args.command

    if cmd == "show-config":
        configure_logging(level=args.log_level or "INFO")
        cfg = load_config_from_path(args.config)
        cfg.validate()
        _print_json(cfg.to_dict())
        return 0

    if cmd == "import":
        cfg = load_config_from_path(args.config) if args.config else RunConfig()
        if args.log_level:
            cfg.logging.level = args.log_level
        cfg.logging.apply()
        apply_overrides(cfg, _import_overrides(args))
        data: Any = args.data[0] if len(args.data) == 1 else list(args.data)
        summary = run_import(data, cfg)
        if not cfg.dispatch.dry_run:
            summary.pop("responses", None)
        _print_json(summary)
        return 0

    print(f"Unknown command: {cmd}", file=sys.stderr)
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the bulkpost command-line interface.

    Args:
        argv (Sequence[str] | None): Optional list of argument strings to
            parse instead of ``sys.argv[1:]``. Primarily useful for tests.

    Returns:
        int: Process exit code, where 0 indicates success and non-zero
        values indicate failure.
    """
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        return _dispatch(args)
    except Exception as exc:  # noqa: BLE001
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
