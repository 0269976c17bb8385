"""
Frame Sink Adapter.

The surface the upstream device pipeline pushes frames into. Each push fans
the frame out to every connected client that has an established session.
"""

import logging
import threading

from webrtc_gateway.errors import FrameSinkError, MediaEngineError, RegistryCorrupted
from webrtc_gateway.logger import TRACE
from webrtc_gateway.media.engine import MediaEngine, PushedFrame, SampleFormat
from webrtc_gateway.transport.registry import ClientRegistry


class GatewayFrameSink:
    """open/push/close capability backed by the client registry."""

    def __init__(self, registry: ClientRegistry, engine: MediaEngine):
        self.registry = registry
        self.engine = engine
        self.logger = logging.getLogger(__name__)
        self.sample_format = None
        self._state_lock = threading.Lock()
        self._opened = False
        self._closed = False
        self.frames_pushed = 0

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def open(self, sample_format: SampleFormat):
        """
        Record the active sample format.

        Raises:
            FrameSinkError: if the sink was already opened or the engine
                cannot carry the format
        """
        with self._state_lock:
            if self._closed:
                raise FrameSinkError("Frame sink already closed")
            if self._opened:
                raise FrameSinkError("Frame sink already opened")
            if not self.engine.supports_format(sample_format):
                raise FrameSinkError(f"Unsupported sample format: {sample_format}")
            try:
                self.engine.open_stream(sample_format)
            except MediaEngineError as e:
                raise FrameSinkError(f"Media engine rejected {sample_format}: {e}") from e
            self.sample_format = sample_format
            self._opened = True
        self.logger.info(f"Frame sink opened: {sample_format}")

    def push(self, frame: PushedFrame) -> bool:
        """
        Forward *frame* to every established session.

        Returns:
            False only on a fatal condition: the sink is not open or the
            registry is inconsistent. Per-client failures are logged.
        """
        if not self.is_open:
            self.logger.error("Frame pushed while the sink is not open")
            return False

        failures = []

        def forward(client):
            session = client.session
            if session is None or not session.established:
                return
            try:
                self.engine.push_frame(session, frame)
            except (MediaEngineError, OSError) as e:
                failures.append((client.index, e))

        try:
            self.registry.visit_connected(forward)
        except RegistryCorrupted as e:
            self.logger.error(f"Frame push aborted: {e}")
            return False

        for index, error in failures:
            self.logger.warning(f"Failed to forward frame to client {index}: {error}")

        self.frames_pushed += 1
        self.logger.log(TRACE, f"Pushed frame pts={frame.pts} size={frame.size}")
        return True

    def close(self):
        """Stop accepting frames. Further calls are ignored."""
        with self._state_lock:
            if not self._opened or self._closed:
                self._closed = True
                return
            self._closed = True
        try:
            self.engine.close_stream()
        except MediaEngineError as e:
            self.logger.warning(f"Media engine failed to close stream: {e}")
        self.logger.info(f"Frame sink closed after {self.frames_pushed} frames")
