"""lmbridge entry point.

Changes:
  - 2026-10-18: `serve` runs the bridge, `proxy` runs the Ollama/OpenAI proxy.
  - 2026-10-18: `sidecar` serves the bridge as MCP tools over stdio.
"""

import argparse
import logging
import os

from lmbridge import __version__
from lmbridge.config import Settings, get_settings
from lmbridge.logging_setup import setup_logging

logger = logging.getLogger(__name__)

# env names the reload worker reads back when --dev re-imports the app factory
_OVERRIDE_ENV = {
    ("serve", "host"): "LM_BRIDGE_HOST",
    ("serve", "port"): "LM_BRIDGE_PORT",
    ("proxy", "host"): "LM_BRIDGE_HOST",
    ("proxy", "port"): "OLLAMA_PROXY_PORT",
    ("serve", "log_level"): "LM_BRIDGE_LOG_LEVEL",
    ("proxy", "log_level"): "LM_BRIDGE_LOG_LEVEL",
    ("sidecar", "log_level"): "LM_BRIDGE_LOG_LEVEL",
}


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    updates = {}
    # the sidecar talks stdio and binds nothing
    listens = args.command != "sidecar"
    if listens and args.host is not None:
        updates["host"] = args.host
    if listens and args.port is not None:
        updates["proxy_port" if args.command == "proxy" else "port"] = args.port
    if args.log_level is not None:
        updates["log_level"] = "warn" if args.log_level == "warning" else args.log_level
    if not updates:
        return settings

    if args.dev:
        for key in ("host", "port", "log_level"):
            value = getattr(args, key)
            if value is not None and (args.command, key) in _OVERRIDE_ENV:
                os.environ[_OVERRIDE_ENV[(args.command, key)]] = str(value)
        get_settings.cache_clear()
    return settings.model_copy(update=updates)


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="lmbridge - one language model chat capability behind bridge, Ollama, OpenAI and MCP surfaces",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  lmbridge serve                     Start the bridge (JSON + SSE) on 127.0.0.1:39217
  lmbridge proxy                     Start the Ollama/OpenAI proxy on 127.0.0.1:11434
  lmbridge proxy --port 8000         Proxy on a different port
  lmbridge serve --dev               Bridge with auto-reload (dev mode)
  lmbridge sidecar                   MCP tools for the bridge on stdin/stdout
""",
    )
    parser.add_argument(
        "command",
        choices=["serve", "proxy", "sidecar"],
        help="'serve' starts the bridge, 'proxy' the compatibility proxy, 'sidecar' the MCP server",
    )
    parser.add_argument("--host", default=None, help="Host to bind (default from settings)")
    parser.add_argument("--port", "-p", type=int, default=None, help="Port to listen on")
    parser.add_argument(
        "--log-level",
        choices=["error", "warn", "warning", "info", "debug"],
        default=None,
        help="Log level (default from settings)",
    )
    parser.add_argument(
        "--dev", action="store_true", help="Development mode with auto-reload"
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    args = parser.parse_args()
    settings = _apply_overrides(get_settings(), args)
    setup_logging(settings.log_level, stderr=args.command == "sidecar")

    try:
        if args.command == "proxy":
            from lmbridge.proxy.serve import run_proxy_server

            run_proxy_server(settings, dev=args.dev)
        elif args.command == "sidecar":
            from lmbridge.sidecar import run_sidecar

            run_sidecar(settings)
        else:
            from lmbridge.bridge.server import run_bridge_server

            run_bridge_server(settings, dev=args.dev)
    except KeyboardInterrupt:
        logger.info("lmbridge stopped.")


if __name__ == "__main__":
    main()
