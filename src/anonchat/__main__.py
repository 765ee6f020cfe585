"""Command line entry point: ``python -m anonchat --port=3040 --proxy=socks5://...``."""

import argparse
import logging
import os

import uvicorn

from .api import create_app
from .config import load_config

logger = logging.getLogger(__name__)

PROXY_ENV_VARS = ("http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="OpenAI-compatible proxy for the anonymous chat backend")
    parser.add_argument("--port", type=int, help="port to listen on")
    parser.add_argument("--proxy", help="SOCKS proxy URL for upstream calls, e.g. socks5://127.0.0.1:1080")
    parser.add_argument("--config", help="path to a config.yaml file")
    return parser.parse_args(argv)


def clear_proxy_env() -> None:
    """Remove ambient proxy settings so upstream traffic only goes through the configured proxy."""
    for name in PROXY_ENV_VARS:
        os.environ.pop(name, None)


def main(argv=None) -> None:
    args = parse_args(argv)
    config = load_config(args.config)
    if args.port:
        config["server"]["port"] = args.port
    if args.proxy:
        config["upstream"]["proxy"] = args.proxy

    proxy = config["upstream"].get("proxy")
    if proxy:
        clear_proxy_env()

    app = create_app(config)
    logger.info(f"Listening on port: {config['server']['port']}, using proxy: {proxy}")
    uvicorn.run(app, host=config["server"]["host"], port=config["server"]["port"])


if __name__ == "__main__":
    main()
