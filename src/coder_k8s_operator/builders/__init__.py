"""Builders for child resource manifests."""
