"""Agentbox: isolated, short-lived execution sandboxes on Kubernetes."""

__version__ = "0.1.0"
