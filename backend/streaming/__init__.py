"""
Streaming module for Raptor

Components:
    - channel: One log or stats WebSocket to a daemon with lifecycle-aware reconnects
    - connector: aiohttp WebSocket factory
    - multiplexer: Shares channels among consumers, driven by lifecycle events
"""

from .channel import StreamChannel
from .multiplexer import StreamMultiplexer

__all__ = ["StreamChannel", "StreamMultiplexer"]
