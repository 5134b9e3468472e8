"""Utility functions for the Coder operator."""
