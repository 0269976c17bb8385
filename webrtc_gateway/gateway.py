"""
WebRTC Gateway lifecycle.

Wires the registry, listener, signaling router and frame sink together and
exposes start/stop/join to the host application.
"""

import logging
from typing import Optional

from webrtc_gateway.config import GatewayConfig
from webrtc_gateway.errors import MediaEngineError
from webrtc_gateway.media.engine import MediaEngine, PushedFrame
from webrtc_gateway.media.frame_sink import GatewayFrameSink
from webrtc_gateway.signaling.router import SignalingRouter
from webrtc_gateway.transport.http import load_static_page
from webrtc_gateway.transport.listener import ConnectionListener
from webrtc_gateway.transport.registry import ClientRegistry


class GatewayObserver:
    """
    Notifications for the host application.

    Subclass and override what you need. Calls are made synchronously on the
    thread where the event happened.
    """

    def on_client_connected(self, index: int):
        pass

    def on_client_disconnected(self, index: int):
        pass

    def on_error(self, message: str):
        pass


class LoggingObserver(GatewayObserver):
    """Observer that just logs every event."""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)

    def on_client_connected(self, index: int):
        self.logger.info(f"Browser client {index} connected")

    def on_client_disconnected(self, index: int):
        self.logger.info(f"Browser client {index} disconnected")

    def on_error(self, message: str):
        self.logger.error(f"Gateway error: {message}")


class WebRTCGateway:
    """
    Local signaling gateway for browser viewers.

    Usage:
        gateway = WebRTCGateway(config, engine, observer=LoggingObserver())
        gateway.start()
        sink = gateway.frame_sink   # hand this to the capture pipeline
        ...
        gateway.stop()
        gateway.join()
    """

    def __init__(self, config: GatewayConfig, engine: MediaEngine,
                 observer: Optional[GatewayObserver] = None, page: Optional[bytes] = None):
        self.config = config
        self.engine = engine
        self.observer = observer or GatewayObserver()
        self.logger = logging.getLogger(__name__)

        self.registry = ClientRegistry(
            capacity=config.server.max_clients,
            on_disconnect=self._on_client_removed,
        )
        self.router = SignalingRouter(self.registry, engine)
        self.frame_sink = GatewayFrameSink(self.registry, engine)
        self.listener = ConnectionListener(
            config.server,
            self.registry,
            self.router,
            self.observer,
            page if page is not None else load_static_page(),
        )

    @property
    def port(self) -> Optional[int]:
        """Port actually bound, once started."""
        return self.listener.port

    @property
    def client_count(self) -> int:
        return len(self.registry)

    @property
    def running(self) -> bool:
        return self.listener.running

    def start(self):
        """
        Bind the listening socket and start the accept thread.

        Raises:
            SetupError: if the socket cannot be set up; no thread is started
        """
        if self.listener.running:
            self.logger.warning(f"WebRTC gateway already running on port {self.port}")
            return
        self.listener.bind()
        self.listener.start()
        self.logger.info(f"WebRTC gateway started on http://{self.config.server.bind_address}:{self.port}")

    def stop(self):
        """Stop accepting, then force-remove every client."""
        self.logger.info("Stopping WebRTC gateway...")
        self.listener.stop()
        removed = self.registry.remove_all()
        if removed:
            self.logger.info(f"Closed {len(removed)} client connection(s)")
        self.frame_sink.close()

    def join(self, timeout=None):
        """Wait for the accept thread (and client readers) to finish."""
        self.listener.join(timeout)
        self.logger.info("WebRTC gateway stopped")

    def destroy(self):
        """Release the media engine. The gateway cannot be restarted afterwards."""
        if self.listener.running:
            self.stop()
            self.join()
        self.engine.shutdown()

    def send_frame(self, frame: PushedFrame) -> bool:
        """Push *frame* through the gateway's frame sink."""
        return self.frame_sink.push(frame)

    def _on_client_removed(self, index: int, session):
        if session is not None:
            try:
                self.engine.close_session(session)
            except MediaEngineError as e:
                self.logger.warning(f"Failed to close media session for client {index}: {e}")
        self.observer.on_client_disconnected(index)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        self.join()
        return False
