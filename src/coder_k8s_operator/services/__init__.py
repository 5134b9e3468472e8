"""Credential provisioner services."""
