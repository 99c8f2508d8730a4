"""Packet capture and replay daemon over packet mmap rings, controlled by JSON-line RPC."""

__version__ = "0.1.0"