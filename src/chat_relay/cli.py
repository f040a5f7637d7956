"""Command-line entry point for chat-relay."""

import argparse
import sys


def main(argv=None):
    parser = argparse.ArgumentParser(prog="chat-relay", description="Streaming multi-provider chat relay")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Start API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--log-level", default="info", help="uvicorn log level")

    args = parser.parse_args(argv)

    if args.command == "serve":
        start_server(args)
    else:
        parser.print_help()
        sys.exit(1)


def start_server(args):
    """Start the API server."""
    import uvicorn

    from .api.server import app

    print(f"Starting chat-relay on {args.host}:{args.port}")
    print(f"Health check: http://{args.host}:{args.port}/health")

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
