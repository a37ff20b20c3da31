"""Core building blocks: configuration, remote sessions, Hyper-V and cluster adapters."""
