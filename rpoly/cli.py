#!/usr/bin/env python3
"""
rPoly CLI — operator tools for the trading agent.

Usage:
    python -m rpoly.cli status            # Memory + evolution stage
    python -m rpoly.cli edge [--json]     # EdgeAnalyzer report over trade history
    python -m rpoly.cli run               # Start the trading loop
"""

import argparse
import asyncio
import json

from rpoly.config import AgentSettings, get_settings
from rpoly.logging import setup_logging
from rpoly.version import APP_NAME, VERSION


def _build_brain(settings: AgentSettings):
    from rpoly.core.workflow_state import WorkflowStateService
    from workflows.updown.brain import DecisionCore
    from workflows.updown.memory import MemoryStore
    from workflows.updown.trade_history import TradeHistory

    state = WorkflowStateService(settings.state_namespace, data_dir=settings.data_dir)
    return DecisionCore(MemoryStore(state), TradeHistory(state))


async def show_status(settings: AgentSettings) -> dict:
    brain = _build_brain(settings)
    await brain.load()
    return brain.get_status()


async def show_edge(settings: AgentSettings):
    brain = _build_brain(settings)
    await brain.load()
    return brain.analyze_edge()


async def run_agent(settings: AgentSettings) -> None:
    from rpoly.connectors.gateway_connector import AsyncGatewayClient
    from rpoly.connectors.telegram_connector import TelegramNotifier
    from workflows.updown.agent import create_agent

    client = AsyncGatewayClient(
        settings.api_base,
        auth_token=settings.auth_token,
        timeout_sec=settings.request_timeout_sec,
    )
    notifier = (
        TelegramNotifier(settings.tg_bot_token, settings.tg_chat_id)
        if settings.telegram_enabled
        else None
    )
    agent = create_agent(settings, client, notifier)
    try:
        await agent.start()
        await agent.run_forever()
    finally:
        await client.close()
        if notifier is not None:
            await notifier.close()


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description=f"{APP_NAME} CLI v{VERSION}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show memory totals and evolution stage")

    edge_parser = subparsers.add_parser("edge", help="Run the edge analysis over trade history")
    edge_parser.add_argument("--json", action="store_true", help="Print the raw report as JSON")

    subparsers.add_parser("run", help="Start the trading loop")

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.json_logs)

    if args.command == "status":
        print(json.dumps(asyncio.run(show_status(settings)), indent=2))
    elif args.command == "edge":
        from workflows.updown.edge import format_report

        report = asyncio.run(show_edge(settings))
        print(report.model_dump_json(indent=2) if args.json else format_report(report))
    elif args.command == "run":
        asyncio.run(run_agent(settings))


if __name__ == "__main__":
    main()
