"""
Run the AgentOS API server: python -m agentos
"""

import argparse

from agentos.api.app import run_server
from agentos.config import get_settings


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(prog="agentos", description="AgentOS API server")
    parser.add_argument("--host", default=settings.api_host, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.api_port, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    run_server(host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
