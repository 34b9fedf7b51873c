#!/usr/bin/env python3
"""
Run Bridge — start a worker behind the tool bridge and talk to it.

Usage:
    # List tools from a YAML config
    python scripts/run_bridge.py --config bridge.yaml --list

    # Invoke a tool against an ad-hoc command
    python scripts/run_bridge.py --command node ./build/index.js --handshake \\
        --invoke get_selected_elements --args '{"limit": 5}'

    # Smoke test against the bundled echo worker
    python scripts/run_bridge.py --echo --invoke echo --args '{"marker": "hi"}'
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

# Ensure src/ is on path for development
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from toolbridge import BridgeConfig, BridgeError, ToolBridge

logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def build_config(args) -> BridgeConfig:
    """Resolve the bridge config from --config, --command or --echo."""
    if args.config:
        config = BridgeConfig.from_yaml(args.config)
    elif args.echo:
        config = BridgeConfig(
            command=[sys.executable, "-m", "toolbridge.mcp.servers.echo"],
            env={"PYTHONPATH": str(PROJECT_ROOT / "src")},
        )
    elif args.command:
        config = BridgeConfig(command=args.command)
    else:
        raise SystemExit("Error: use --config <file>, --command <argv...> or --echo")

    if args.handshake:
        config.handshake = True
    if args.timeout:
        config.request_timeout = args.timeout
    return config


def print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def main():
    parser = argparse.ArgumentParser(
        description="Run a tool worker behind the bridge and call it.",
    )
    parser.add_argument("--config", "-c", type=str, help="Path to a YAML bridge config")
    parser.add_argument("--command", nargs=argparse.REMAINDER, help="Worker command (consumes the rest of the line)")
    parser.add_argument("--echo", action="store_true", help="Use the bundled echo worker")
    parser.add_argument("--handshake", action="store_true", help="Perform the MCP initialize handshake")
    parser.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds")
    parser.add_argument("--list", action="store_true", help="List available tools")
    parser.add_argument("--invoke", "-i", type=str, help="Tool name to invoke")
    parser.add_argument("--args", "-a", type=str, default="{}", help="Tool arguments as JSON")
    parser.add_argument("--health", action="store_true", help="Print worker health")
    parser.add_argument("--verbose", "-v", action="store_true")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not (args.list or args.invoke or args.health):
        parser.error("Nothing to do: use --list, --invoke or --health")

    try:
        arguments = json.loads(args.args)
    except json.JSONDecodeError as e:
        parser.error(f"--args is not valid JSON: {e}")

    bridge = ToolBridge(build_config(args))

    def shutdown(sig, frame):
        print("\nShutting down worker...", file=sys.stderr)
        bridge.stop(graceful=False)
        sys.exit(0)
    signal.signal(signal.SIGINT, shutdown)

    try:
        bridge.start()
        if args.list:
            print_json({"tools": [t.to_dict() for t in bridge.list_tools()]})
        if args.invoke:
            print_json({"result": bridge.invoke(args.invoke, arguments)})
        if args.health:
            print_json(bridge.health())
    except BridgeError as e:
        print_json({"error": e.to_dict()})
        logger.debug(f"worker stderr: {bridge.supervisor.stderr_tail()}")
        sys.exit(1)
    finally:
        bridge.stop()


if __name__ == "__main__":
    main()
