"""
Command line entry point.

    ratebook-ingest init-db
    ratebook-ingest import ratebook.xlsx --provider venus --contract-type BCH
    ratebook-ingest analyze ratebook.xlsx --provider ald
    ratebook-ingest worker --once
    ratebook-ingest serve --port 8000
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

import structlog
from dotenv import load_dotenv

from .db.session import get_engine, get_session_factory, init_db
from .exceptions import RatebookIngestError
from .imports.importer import RatebookImporter
from .imports.queue import ImportQueue, ImportWorker
from .utils.logging import setup_logging

logger = structlog.get_logger()


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_init_db(args: argparse.Namespace) -> int:
    init_db(get_engine())
    print("Database schema created")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    path = Path(args.file)
    importer = RatebookImporter(get_session_factory())
    result = importer.import_file(
        args.provider,
        args.contract_type,
        path.name,
        path.read_bytes(),
        force_reimport=args.force,
        dry_run=args.dry_run,
    )
    _print_json(result.to_dict())
    return 0 if result.status in ("completed", "dry_run") else 1


def cmd_analyze(args: argparse.Namespace) -> int:
    path = Path(args.file)
    importer = RatebookImporter(get_session_factory())
    _print_json(importer.analyze_file(args.provider, path.name, path.read_bytes()))
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    factory = get_session_factory()
    worker = ImportWorker(ImportQueue(factory), RatebookImporter(factory))
    if args.once:
        job = worker.run_once(args.provider)
        if job is None:
            print("No pending import jobs")
        else:
            _print_json(job)
        return 0
    worker.run_forever(poll_interval=args.poll_interval)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "ratebook_ingest.api:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="ratebook-ingest", description="Provider rate sheet ingestion")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create database tables")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("import", help="Import a rate sheet")
    p.add_argument("file", help="Excel or CSV rate sheet")
    p.add_argument("--provider", required=True, help="Provider code, e.g. venus")
    p.add_argument("--contract-type", help="Contract type, e.g. BCH (defaults to the provider profile)")
    p.add_argument("--force", action="store_true", help="Re-import even if the file was already imported")
    p.add_argument("--dry-run", action="store_true", help="Parse and report without writing")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("analyze", help="Detect sheets and suggest column mappings")
    p.add_argument("file", help="Excel or CSV rate sheet")
    p.add_argument("--provider", required=True, help="Provider code")
    p.set_defaults(func=cmd_analyze)

    p = sub.add_parser("worker", help="Process queued import jobs")
    p.add_argument("--once", action="store_true", help="Run at most one job and exit")
    p.add_argument("--provider", help="Only claim jobs for this provider")
    p.add_argument("--poll-interval", type=float, default=5.0, help="Seconds between queue polls")
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    p.set_defaults(func=cmd_serve)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    setup_logging()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except RatebookIngestError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
