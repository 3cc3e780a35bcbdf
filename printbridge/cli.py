"""Command line entry point for the bridge."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
from typing import Optional, Sequence

from rich.logging import RichHandler

from . import __version__
from .config_manager import BridgeSettings, get_config_manager

log = logging.getLogger(__name__)


def configureLogging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    if not verbose:
        logging.getLogger("werkzeug").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def parseArguments(argumentList: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="printbridge",
        description="Bridge local 3D printers and their cameras to the control plane.",
    )
    parser.add_argument("--config", help="Path to the credentials file (default: ~/.printbridge/config.json).")
    parser.add_argument("--api-key", dest="apiKey", help="Store this API key in the credentials file and continue.")
    parser.add_argument("--api-url", dest="apiUrl", help="Control plane base URL.")
    parser.add_argument("--port", type=int, help="Media gateway port.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argumentList)


def printMissingKeyGuidance(configPath) -> None:
    print("No API key configured.", file=sys.stderr)
    print(f"Create {configPath} with:", file=sys.stderr)
    print('  { "apiKey": "vfk_..." }', file=sys.stderr)
    print("or run: printbridge --api-key vfk_...", file=sys.stderr)


def main(argumentList: Optional[Sequence[str]] = None) -> int:
    arguments = parseArguments(argumentList)
    configureLogging(arguments.verbose)

    config = get_config_manager(arguments.config)
    if arguments.apiKey:
        config.set_api_key(arguments.apiKey.strip())
        if config.save():
            log.info("API key stored in %s", config.config_path)

    if not config.is_configured():
        printMissingKeyGuidance(config.config_path)
        sys.exit(1)
    apiKey = config.get_api_key()

    settings = BridgeSettings.fromEnvironment()
    if arguments.apiUrl:
        settings = dataclasses.replace(settings, apiUrl=arguments.apiUrl.rstrip("/"))
    if arguments.port:
        settings = dataclasses.replace(settings, gatewayPort=arguments.port)

    from .app import Bridge

    log.info("printbridge %s, API key %s", __version__, config.get_masked_api_key())
    bridge = Bridge(settings, config, apiKey)

    def handleSignal(signum, frame) -> None:
        log.info("Received signal %s", signum)
        bridge.shutdown()

    signal.signal(signal.SIGINT, handleSignal)
    signal.signal(signal.SIGTERM, handleSignal)

    bridge.start()
    try:
        while not bridge.wait(1.0):
            pass
    finally:
        bridge.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
