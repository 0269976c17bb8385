"""
Media side of the gateway.

The GStreamer engine lives in ``gst_engine`` and is imported on demand so the
gateway itself does not require PyGObject.
"""
