"""
GStreamer webrtcbin media engine.

Each browser session gets its own pipeline:

    appsrc ! [videoconvert ! encoder] ! h264parse ! rtph264pay ! capsfilter ! webrtcbin

Frames pushed through the gateway are copied into the appsrc of every
established session. A GLib main loop runs in a background thread so bus
watches and webrtcbin signals are dispatched.
"""

import logging
import threading
from typing import Dict, Optional

import gi
gi.require_version('Gst', '1.0')
gi.require_version('GstSdp', '1.0')
gi.require_version('GstWebRTC', '1.0')
from gi.repository import GLib, Gst, GstSdp, GstWebRTC

from webrtc_gateway.config import IceConfig, MediaConfig
from webrtc_gateway.errors import MediaEngineError
from webrtc_gateway.media.engine import (
    EmitCallback,
    MediaEngine,
    MediaSession,
    PushedFrame,
    SampleFormat,
)
from webrtc_gateway.signaling.messages import (
    TYPE_ANSWER,
    TYPE_OFFER,
    ConnectivityCandidate,
    SessionDescription,
)

CODEC_H264 = "video/h264"
CODEC_RAW = "video/x-raw"
SUPPORTED_CODECS = (CODEC_H264, CODEC_RAW)

RTP_CAPS = "application/x-rtp,media=video,encoding-name=H264,payload=96,clock-rate=90000"


class GstSession(MediaSession):
    """A webrtcbin pipeline bound to one browser client."""

    def __init__(self, client_index: int, emit: EmitCallback):
        super().__init__(client_index)
        self.emit = emit
        self.pipeline = None
        self.appsrc = None
        self.webrtcbin = None
        self.bus = None


class GstWebRTCEngine(MediaEngine):
    """
    MediaEngine backed by GStreamer's webrtcbin.

    Args:
        ice_config: STUN/TURN servers handed to every webrtcbin
        media_config: default codec and latency
    """

    H264_ENCODER_CANDIDATES = [
        {
            "name": "nvh264enc",
            "type": "hardware",
            "fixed_properties": {
                "preset": 3,  # low latency
                "rc-mode": 0,  # CBR
                "zerolatency": True,
            },
        },
        {
            "name": "x264enc",
            "type": "software",
            "fixed_properties": {
                "tune": "zerolatency",
                "speed-preset": "ultrafast",
            },
        },
    ]

    def __init__(self, ice_config: Optional[IceConfig] = None,
                 media_config: Optional[MediaConfig] = None):
        self.ice_config = ice_config or IceConfig()
        self.media_config = media_config or MediaConfig()
        self.logger = logging.getLogger(__name__)

        if not Gst.is_initialized():
            Gst.init(None)

        self.sample_format: Optional[SampleFormat] = None
        self._sessions: Dict[int, GstSession] = {}
        self._lock = threading.Lock()

        self.main_loop = GLib.MainLoop()
        self.loop_thread = threading.Thread(target=self.main_loop.run, name="webrtc-glib", daemon=True)
        self.loop_thread.start()

    def supports_format(self, sample_format: SampleFormat) -> bool:
        if sample_format.codec not in SUPPORTED_CODECS:
            return False
        if sample_format.codec == CODEC_RAW:
            return bool(sample_format.width and sample_format.height)
        return True

    def open_stream(self, sample_format: SampleFormat):
        if not self.supports_format(sample_format):
            raise MediaEngineError(f"Unsupported sample format: {sample_format}")
        self.sample_format = sample_format
        self.logger.info(f"Media stream opened: {sample_format}")

    def close_stream(self):
        self.logger.info("Media stream closed")
        self.sample_format = None

    def create_session(self, client_index: int, emit: EmitCallback) -> GstSession:
        session = GstSession(client_index, emit)
        self._build_pipeline(session)

        ret = session.pipeline.set_state(Gst.State.PLAYING)
        if ret == Gst.StateChangeReturn.FAILURE:
            self._teardown(session)
            raise MediaEngineError(f"Failed to start pipeline for client {client_index}")

        with self._lock:
            previous = self._sessions.get(client_index)
            self._sessions[client_index] = session
        if previous is not None:
            self.logger.warning(f"Replacing media session still open for client {client_index}")
            self._teardown(previous)
        self.logger.info(f"Media session created for client {client_index}")
        return session

    def create_offer(self, session: GstSession) -> SessionDescription:
        promise = Gst.Promise.new()
        session.webrtcbin.emit("create-offer", None, promise)
        reply = self._wait(promise, "create-offer")
        offer = reply.get_value("offer") if reply else None
        if offer is None:
            raise MediaEngineError(f"webrtcbin produced no offer for client {session.client_index}")

        promise = Gst.Promise.new()
        session.webrtcbin.emit("set-local-description", offer, promise)
        promise.interrupt()

        sdp = offer.sdp.as_text()
        self.logger.debug(f"Offer for client {session.client_index}:\n{sdp}")
        return SessionDescription(TYPE_OFFER, sdp)

    def set_remote_description(self, session: GstSession, description: SessionDescription):
        if description.kind != TYPE_ANSWER:
            raise MediaEngineError(f"Expected an answer, got {description.kind}")

        res, sdpmsg = GstSdp.SDPMessage.new_from_text(description.sdp)
        if res != GstSdp.SDPResult.OK:
            raise MediaEngineError(f"Could not parse answer from client {session.client_index}")

        answer = GstWebRTC.WebRTCSessionDescription.new(GstWebRTC.WebRTCSDPType.ANSWER, sdpmsg)
        promise = Gst.Promise.new()
        session.webrtcbin.emit("set-remote-description", answer, promise)
        self._wait(promise, "set-remote-description")
        self.logger.info(f"Remote description applied for client {session.client_index}")

    def add_ice_candidate(self, session: GstSession, candidate: ConnectivityCandidate):
        self.logger.debug(f"Remote ICE candidate for client {session.client_index}: {candidate.candidate}")
        session.webrtcbin.emit("add-ice-candidate", candidate.sdp_mline_index, candidate.candidate)

    def push_frame(self, session: GstSession, frame: PushedFrame):
        appsrc = session.appsrc
        if appsrc is None:
            raise MediaEngineError(f"Session for client {session.client_index} is closed")

        # The frame data is only borrowed for the duration of the push
        buffer = Gst.Buffer.new_wrapped(bytes(frame.data))
        buffer.pts = frame.pts
        if not frame.keyframe:
            buffer.set_flags(Gst.BufferFlags.DELTA_UNIT)

        ret = appsrc.emit("push-buffer", buffer)
        if ret != Gst.FlowReturn.OK:
            raise MediaEngineError(f"appsrc rejected buffer for client {session.client_index}: {ret}")

    def close_session(self, session: GstSession):
        with self._lock:
            if self._sessions.get(session.client_index) is session:
                del self._sessions[session.client_index]
        self._teardown(session)
        self.logger.info(f"Media session closed for client {session.client_index}")

    def shutdown(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._teardown(session)

        if self.main_loop.is_running():
            self.main_loop.quit()
        if self.loop_thread.is_alive():
            self.loop_thread.join(timeout=5.0)
        self.logger.info("GStreamer media engine shut down")

    def _build_pipeline(self, session: GstSession):
        sample_format = self.sample_format or SampleFormat(self.media_config.codec)
        pipeline = Gst.Pipeline.new(f"webrtc_client_{session.client_index}")

        appsrc = _make("appsrc", "source")
        appsrc.set_property("is-live", True)
        appsrc.set_property("format", Gst.Format.TIME)
        appsrc.set_property("block", False)
        appsrc.set_property("caps", Gst.Caps.from_string(_source_caps(sample_format)))

        chain = [appsrc]
        if sample_format.codec == CODEC_RAW:
            chain.append(_make("videoconvert", "convert"))
            chain.append(self._create_encoder_element())

        parser = _make("h264parse", "parser")
        payloader = _make("rtph264pay", "payloader")
        payloader.set_property("config-interval", -1)
        capsfilter = _make("capsfilter", "rtpcaps")
        capsfilter.set_property("caps", Gst.Caps.from_string(RTP_CAPS))
        chain.extend([parser, payloader, capsfilter])

        webrtcbin = _make("webrtcbin", "webrtc")
        webrtcbin.set_property("bundle-policy", GstWebRTC.WebRTCBundlePolicy.MAX_BUNDLE)
        webrtcbin.set_property("latency", self.media_config.latency_ms)
        stun_uri = self.ice_config.stun_uri()
        if stun_uri:
            webrtcbin.set_property("stun-server", stun_uri)
        turn_uri = self.ice_config.turn_uri()
        if turn_uri:
            webrtcbin.set_property("turn-server", turn_uri)
        chain.append(webrtcbin)

        for element in chain:
            pipeline.add(element)
        for upstream, downstream in zip(chain, chain[1:]):
            if not upstream.link(downstream):
                raise MediaEngineError(
                    f"Failed to link {upstream.get_name()} to {downstream.get_name()}")

        webrtcbin.connect("on-ice-candidate", self._on_ice_candidate, session)

        bus = pipeline.get_bus()
        bus.add_signal_watch()
        bus.connect("message", self._on_bus_message, session)

        session.pipeline = pipeline
        session.appsrc = appsrc
        session.webrtcbin = webrtcbin
        session.bus = bus

    def _create_encoder_element(self):
        for candidate_config in self.H264_ENCODER_CANDIDATES:
            encoder = Gst.ElementFactory.make(candidate_config["name"], "encoder")
            if not encoder:
                continue
            for prop, value in candidate_config["fixed_properties"].items():
                encoder.set_property(prop, value)
            self.logger.info(f"Selected encoder: {candidate_config['name']} ({candidate_config['type']})")
            return encoder
        raise MediaEngineError("Failed to create any suitable H.264 encoder")

    def _on_ice_candidate(self, webrtcbin, mline_index, candidate, session: GstSession):
        self.logger.debug(f"Local ICE candidate for client {session.client_index}: {candidate}")
        session.emit(ConnectivityCandidate(candidate, mline_index))

    def _on_bus_message(self, bus, message, session: GstSession):
        t = message.type
        if t == Gst.MessageType.ERROR:
            err, debug = message.parse_error()
            self.logger.error(f"Pipeline error for client {session.client_index}: {err}: {debug}")
        elif t == Gst.MessageType.WARNING:
            err, debug = message.parse_warning()
            self.logger.warning(f"Pipeline warning for client {session.client_index}: {err}")
        elif t == Gst.MessageType.STATE_CHANGED and message.src == session.pipeline:
            old_state, new_state, _ = message.parse_state_changed()
            self.logger.debug(
                f"Client {session.client_index} pipeline {old_state.value_nick} -> {new_state.value_nick}")
        return True

    def _teardown(self, session: GstSession):
        if session.bus is not None:
            session.bus.remove_signal_watch()
            session.bus = None
        if session.pipeline is not None:
            session.pipeline.set_state(Gst.State.NULL)
            session.pipeline = None
        session.appsrc = None
        session.webrtcbin = None

    def _wait(self, promise, what):
        result = promise.wait()
        if result != Gst.PromiseResult.REPLIED:
            raise MediaEngineError(f"{what} did not complete: {result.value_nick}")
        return promise.get_reply()


def _make(factory: str, name: str):
    element = Gst.ElementFactory.make(factory, name)
    if not element:
        raise MediaEngineError(f"GStreamer element '{factory}' is not available")
    return element


def _source_caps(sample_format: SampleFormat) -> str:
    if sample_format.codec == CODEC_RAW:
        caps = f"video/x-raw,format=I420,width={sample_format.width},height={sample_format.height}"
    else:
        caps = "video/x-h264,stream-format=byte-stream,alignment=au"
    if sample_format.framerate:
        caps += f",framerate={sample_format.framerate}/1"
    return caps
