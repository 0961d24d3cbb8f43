"""
Entitlement Ledger — Command-line launcher.

Usage:
    python run.py                       # serve on 0.0.0.0:8000
    python run.py serve --port 9000 --reload
    python run.py sweep                 # one expiry pass, then exit
"""
import argparse
import json

import uvicorn


def serve(args):
    print(f"""
    ========================================================
      Entitlement Ledger -- API Server
      API:     http://{args.host}:{args.port}
      Docs:    http://localhost:{args.port}/docs
    ========================================================
    """)
    uvicorn.run(
        "ledger.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=args.workers,
        log_level="info",
    )


def sweep(_args):
    from ledger.database import SessionLocal, init_db
    from ledger.jobs.sweeper import sweep_once
    from ledger.utils.logger import setup_logging, trace_ctx

    setup_logging()
    init_db()
    db = SessionLocal()
    try:
        with trace_ctx("cli-sweep"):
            print(json.dumps(sweep_once(db)))
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Entitlement Ledger")
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Run the API server (default)")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve_parser.add_argument("--reload", action="store_true", help="Enable hot reload for development")
    serve_parser.add_argument("--workers", type=int, default=1, help="Number of workers (default: 1)")
    serve_parser.set_defaults(handler=serve)

    sweep_parser = sub.add_parser("sweep", help="Expire stale orders and lapsed subscriptions once")
    sweep_parser.set_defaults(handler=sweep)

    args = parser.parse_args()
    if args.command is None:
        args = serve_parser.parse_args([])
        args.handler = serve
    args.handler(args)


if __name__ == "__main__":
    main()
