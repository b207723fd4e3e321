"""
Connectors — Boundary adapters to external services.

Each connector wraps one external service behind the protocols the trading
core consumes:

    from rpoly.connectors import AsyncGatewayClient, TelegramNotifier

    client = AsyncGatewayClient("http://localhost:3001")
    snapshots = await client.get_snapshots()
"""

from rpoly.connectors.gateway_connector import AsyncGatewayClient
from rpoly.connectors.telegram_connector import TelegramNotifier

__all__ = ["AsyncGatewayClient", "TelegramNotifier"]
