"""Browser-facing transport: HTTP bootstrap, channel framing and the client registry."""
