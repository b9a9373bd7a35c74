"""Realtime connection liveness and reconnect handling."""

from clanker.gateway.monitor import GatewayResilienceMonitor, backoff_delay_ms

__all__ = [
    "GatewayResilienceMonitor",
    "backoff_delay_ms",
]
