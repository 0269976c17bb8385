#!/usr/bin/env python3
"""
WebRTC Gateway - Main Entry Point
"""

import argparse
import logging
import signal
import sys
import threading

from .config import DEFAULT_CONFIG_PATH, GatewayConfig
from .errors import SetupError
from .gateway import LoggingObserver, WebRTCGateway
from .logger import setup_logging


def load_config(config_path, logger):
    """Load configuration from a YAML file, falling back to defaults."""
    logger.info(f"Attempting to load configuration from: {config_path}")
    try:
        config = GatewayConfig.load_from_file(config_path)
        logger.info(f"Successfully loaded configuration from {config_path}")
        return config
    except FileNotFoundError:
        logger.warning(f"Configuration file not found: {config_path}, using defaults")
        return GatewayConfig.load_default()


def create_media_engine(config: GatewayConfig):
    """
    Build the media engine named in the configuration.

    The GStreamer engine is imported here so PyGObject is only needed when it
    is actually selected.
    """
    engine_name = config.media.engine.lower()
    if engine_name == "gstreamer":
        from .media.gst_engine import GstWebRTCEngine
        return GstWebRTCEngine(config.ice, config.media)
    raise ValueError(f"Unknown media engine: {config.media.engine}")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='WebRTC signaling gateway for browser viewers')
    parser.add_argument('--config-path', type=str,
                        default=DEFAULT_CONFIG_PATH,
                        help='Path to the configuration file')
    parser.add_argument('--port', type=int, default=None,
                        help='Listening port (overrides the configuration file)')
    return parser.parse_args(argv)


def main(argv=None):
    """
    Main entry point for the WebRTC Gateway.
    """
    args = parse_args(argv)
    logger = logging.getLogger(__name__)

    config = load_config(args.config_path, logger)
    if args.port is not None:
        config.server.port = args.port

    setup_logging(config.logging)

    logger.info('=' * 80)
    logger.info('Hello, I am the WebRTC Gateway!')
    logger.info('=' * 80)
    logger.info(f'Using config file: {args.config_path}')

    try:
        engine = create_media_engine(config)
    except Exception as e:
        logger.error(f"Failed to create media engine: {e}")
        return 1

    gateway = WebRTCGateway(config, engine, observer=LoggingObserver())
    try:
        gateway.start()
    except SetupError as e:
        logger.error(f"Failed to start gateway: {e}")
        engine.shutdown()
        return 1

    stop_requested = threading.Event()

    def handle_signal(signum, frame):
        print("\nReceived interrupt signal, shutting down...")
        stop_requested.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    logger.info("WebRTC Gateway is running. Press Ctrl+C to stop.")
    while not stop_requested.is_set() and gateway.running:
        stop_requested.wait(1.0)

    gateway.stop()
    gateway.join()
    gateway.destroy()
    return 0


if __name__ == '__main__':
    sys.exit(main())
