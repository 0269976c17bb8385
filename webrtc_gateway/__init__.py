"""
WebRTC Gateway

Local signaling gateway that lets browsers view a live device stream over
WebRTC. Serves a bootstrap page, upgrades browsers to a message channel and
relays offer/answer/ICE traffic between them and a media engine.
"""

__version__ = "0.1.0"

from .gateway import GatewayObserver, LoggingObserver, WebRTCGateway

__all__ = ["GatewayObserver", "LoggingObserver", "WebRTCGateway", "__version__"]
