"""Signaling message models and routing."""
