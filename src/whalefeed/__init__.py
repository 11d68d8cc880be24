"""
whalefeed - Birdeye new-pair and large-trade relay.

Polls (or streams) the upstream token API, deduplicates and filters the
records, keeps the most recent ones in ring buffers and serves them over HTTP.
"""

__version__ = "0.3.0"
