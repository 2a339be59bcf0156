"""Paid, Merkle-verified chunk transfer between buyers and seeders over asyncio streams."""

__version__ = "0.1.0"

__all__ = ["batching", "catalog", "client", "dht", "handler", "planner", "wire"]