#!/usr/bin/env python3
"""
WebRTC Gateway entry point when run as a module.

Allows execution via: python -m webrtc_gateway
"""

import sys

from .main import main

if __name__ == '__main__':
    sys.exit(main())
