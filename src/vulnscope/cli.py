from __future__ import annotations

import argparse
import logging
import signal
import threading

from .config import Config, ConfigError, load_config, require_credentials
from .enrichment.cwe import CweResolver
from .ingest import default_window, ingest_window, run_collector
from .llm import OpenAICompatibleClient
from .queue import DbQueue
from .storage import init_db
from .utils import configure_logging, isoformat_utc, json_dumps, log_event, parse_iso
from .worker import EnrichmentWorker


def _setup_logging() -> logging.Logger:
    return configure_logging("vulnscope")


def _load(args: argparse.Namespace, logger: logging.Logger, credentials: list[str]) -> Config | None:
    try:
        config = load_config(args.config)
        require_credentials(config, credentials)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    return config


def _stop_event() -> threading.Event:
    stop = threading.Event()

    def _handle(signum, _frame) -> None:
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
    return stop


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger, [])
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", backend=conn.backend)
    return 0


def _cmd_collect(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger, [])
    if config is None:
        return 1
    if not config.feed.api_key:
        log_event(logger, logging.WARNING, "feed_api_key_missing")
    start, end = default_window(config)
    try:
        if args.start:
            start = isoformat_utc(parse_iso(args.start))
        if args.end:
            end = isoformat_utc(parse_iso(args.end))
    except ValueError as exc:
        log_event(logger, logging.ERROR, "invalid_window", error=str(exc))
        return 1
    conn = init_db(config.paths.state_db)
    try:
        queue = DbQueue(conn, config.queue)
        if args.once or args.start or args.end:
            result = ingest_window(conn, queue, config, start, end)
            print(json_dumps(result))
            return 1 if result["errors"] else 0
        run_collector(conn, queue, config, _stop_event())
        return 0
    finally:
        conn.close()


def _cmd_analyze(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger, ["llm"])
    if config is None:
        return 1
    if not config.github.token:
        log_event(logger, logging.WARNING, "github_token_missing")
    conn = init_db(config.paths.state_db)
    try:
        worker = EnrichmentWorker(
            conn,
            DbQueue(conn, config.queue),
            OpenAICompatibleClient.from_config(config.llm),
            config,
        )
        if args.once:
            worker.tick()
        else:
            worker.run(_stop_event())
        return 0
    finally:
        conn.close()


def _cmd_queue_send(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger, [])
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        queue = DbQueue(conn, config.queue)
        for cve_id in args.cve_ids:
            message_id = queue.send(cve_id.strip().upper())
            log_event(logger, logging.INFO, "queue_message_sent", cve_id=cve_id, message_id=message_id)
        return 0
    finally:
        conn.close()


def _cmd_queue_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger, [])
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        print(json_dumps(DbQueue(conn, config.queue).stats()))
        return 0
    finally:
        conn.close()


def _cmd_cwe_resolve(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger, ["llm"])
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        resolver = CweResolver(conn, OpenAICompatibleClient.from_config(config.llm), config)
        status = 0
        for cwe_id in args.cwe_ids:
            try:
                summary = resolver.resolve(cwe_id, force=args.force)
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.ERROR, "cwe_resolve_failed", cwe_id=cwe_id, error=exc)
                status = 1
                continue
            if summary is None:
                log_event(logger, logging.WARNING, "cwe_not_resolved", cwe_id=cwe_id)
                continue
            print(json_dumps(summary))
        return status
    finally:
        conn.close()


def _cmd_api(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("vulnscope.api:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vulnscope", description="vulnscope CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to VS_CONFIG)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_sub = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_sub.add_parser("migrate", help="Apply schema migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    collect = subparsers.add_parser("collect", help="Ingest CVEs from the NVD feed")
    collect.add_argument("--once", action="store_true", help="Ingest one window and exit")
    collect.add_argument("--start", default=None, help="Window start (ISO-8601)")
    collect.add_argument("--end", default=None, help="Window end (ISO-8601)")
    collect.set_defaults(func=_cmd_collect)

    analyze = subparsers.add_parser("analyze", help="Run the enrichment worker")
    analyze.add_argument("--once", action="store_true", help="Process one batch and exit")
    analyze.set_defaults(func=_cmd_analyze)

    queue_parser = subparsers.add_parser("queue", help="Enrichment queue tools")
    queue_sub = queue_parser.add_subparsers(dest="queue_command", required=True)
    queue_send = queue_sub.add_parser("send", help="Enqueue CVE ids for analysis")
    queue_send.add_argument("cve_ids", nargs="+")
    queue_send.set_defaults(func=_cmd_queue_send)
    queue_stats = queue_sub.add_parser("stats", help="Show queue depth")
    queue_stats.set_defaults(func=_cmd_queue_stats)

    cwe_parser = subparsers.add_parser("cwe", help="CWE cache tools")
    cwe_sub = cwe_parser.add_subparsers(dest="cwe_command", required=True)
    cwe_resolve = cwe_sub.add_parser("resolve", help="Resolve and cache CWE summaries")
    cwe_resolve.add_argument("cwe_ids", nargs="+")
    cwe_resolve.add_argument("--force", action="store_true", help="Re-summarize cached entries")
    cwe_resolve.set_defaults(func=_cmd_cwe_resolve)

    api = subparsers.add_parser("api", help="Serve the read API")
    api.add_argument("--host", default="127.0.0.1")
    api.add_argument("--port", type=int, default=8000)
    api.set_defaults(func=_cmd_api)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
