from __future__ import annotations

import argparse
import json
from pathlib import Path

from dotenv import load_dotenv

from .config import AgentConfigError, load_agent_config_from_env
from .connectivity import ConnectivityConfigError
from .interval_policy import IntervalPolicyError
from .observability import configure_logging
from .runtime import build_buffer, build_runtime


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")

    parser = argparse.ArgumentParser(description="Inspect or drain the geobeacon delivery buffer")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("count", help="Print the number of queued payloads")

    list_p = sub.add_parser("list", help="Print queued payloads oldest-first (JSON lines)")
    list_p.add_argument("--limit", type=int, default=None, help="Optional cap on printed rows")

    clear_p = sub.add_parser("clear", help="Delete every queued payload")
    clear_p.add_argument("--yes", action="store_true", help="Required; clearing discards undelivered data")

    sub.add_parser("flush", help="Drain the buffer to the collector now")

    args = parser.parse_args(argv)

    try:
        config = load_agent_config_from_env()
    except AgentConfigError as exc:
        raise SystemExit(f"[geobeacon-buffer] invalid config: {exc}") from exc

    configure_logging(level=config.log_level, log_format=config.log_format)

    if args.command == "flush":
        try:
            runtime = build_runtime(config)
        except (ConnectivityConfigError, IntervalPolicyError) as exc:
            raise SystemExit(f"[geobeacon-buffer] invalid config: {exc}") from exc
        report = runtime.flusher.flush_once()
        print(
            "[geobeacon-buffer] flush connected=%s delivered=%s remaining=%s stopped_early=%s%s"
            % (
                report.connected,
                report.delivered,
                runtime.buffer.count(),
                report.stopped_early,
                f" skipped={report.skipped_reason}" if report.skipped_reason else "",
            )
        )
        return

    buf = build_buffer(config)

    if args.command == "count":
        print(buf.count())
        return

    if args.command == "list":
        if args.limit is not None and args.limit < 1:
            raise SystemExit("--limit must be >= 1")
        for row in buf.drain(limit=args.limit):
            print(json.dumps({"seq": row.seq, "enqueued_at": row.enqueued_at, "payload": row.payload}, sort_keys=True))
        return

    if args.command == "clear":
        if not args.yes:
            raise SystemExit("refusing to clear without --yes")
        deleted = buf.clear()
        print(f"[geobeacon-buffer] cleared {deleted} payloads")
        return


if __name__ == "__main__":
    main()
