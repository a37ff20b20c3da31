"""Hyper-V MCP: cluster-aware VM relocation between Hyper-V hosts."""

__version__ = "0.1.0"
