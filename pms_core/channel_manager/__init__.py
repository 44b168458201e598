"""Beds24 channel-manager synchronization."""
