"""Kubernetes operator for Coder control planes, provisioners and workspace proxies."""

__version__ = "0.1.0"
