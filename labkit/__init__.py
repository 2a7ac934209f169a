"""Protobuf-style codec, simulated in-process RPC network and linearizability checker."""

__version__ = "0.1.0"