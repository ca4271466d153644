"""
Command line entry point for the ThreadRelay transcript server.

Options that map to THREADRELAY_* settings are exported to the environment
before threadrelay.config is imported, so the server (and a reloader
subprocess) sees them.
"""
import argparse
import os

import uvicorn

# CLI option -> environment variable read by threadrelay.config
_ENV_OPTIONS = {
    "db": "THREADRELAY_DB",
    "url": "THREADRELAY_URL",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Serve ThreadRelay thread transcripts over HTTP")
    parser.add_argument("--host", help="Bind host (default: THREADRELAY_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Bind port (default: THREADRELAY_PORT or 39780)")
    parser.add_argument("--db", help="SQLite database holding the threads (default: THREADRELAY_DB)")
    parser.add_argument("--url", help="Public base URL used in thread log links (default: THREADRELAY_URL)")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)

    for option, env_name in _ENV_OPTIONS.items():
        value = getattr(args, option)
        if value:
            os.environ[env_name] = value

    from threadrelay.config import HOST, PORT

    uvicorn.run(
        "threadrelay.main:app",
        host=args.host or HOST,
        port=args.port or PORT,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
