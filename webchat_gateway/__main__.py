"""Run the gateway: ``python -m webchat_gateway [--host HOST] [--port PORT]``."""

import argparse
from typing import List, Optional

import uvicorn
from dotenv import load_dotenv

from webchat_gateway.config import load_config


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="webchat_gateway",
        description="OpenAI-compatible gateway for web chat backends",
    )
    parser.add_argument("--host", help="bind address (default: HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="bind port (default: PORT or 3000)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    load_dotenv()
    config = load_config(use_dotenv=False)
    uvicorn.run(
        "webchat_gateway.main:app",
        host=args.host or config.host,
        port=args.port or config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
