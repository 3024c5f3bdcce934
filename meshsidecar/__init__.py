"""Sidecar runtime pieces: consistent-hash actor placement, direct messaging, an HTTP API, a pod injector webhook and operator handlers."""

__version__ = "0.4.0"