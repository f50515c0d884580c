"""
Clean main entry point for the rank drop analyzer
"""
import asyncio
import sys

from app import create_cli, main
from config import config


def run(argv=None) -> int:
    """Parse arguments and dispatch; server mode hands the loop to uvicorn"""
    parser = create_cli()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "server":
        import uvicorn
        print(f"Starting API server on {args.host}:{args.port}")
        uvicorn.run("api:app", host=args.host, port=args.port, log_level=config.log_level.lower())
        return 0

    try:
        return asyncio.run(main(args))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(run())
