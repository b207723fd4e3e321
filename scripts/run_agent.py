#!/usr/bin/env python3
"""
rPoly trading agent — entry point only.
All logic lives in workflows/updown/:
  agent.py         — TradingAgent tick loop
  brain.py         — DecisionCore (gates, Kelly sizing, learning)
  exit_manager.py  — ExitManager (TP / SL / pre-close / resolution)
  memory.py        — MemoryStore (WorkflowStateService persistence)
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from rpoly.cli import run_agent  # noqa: E402
from rpoly.config import get_settings  # noqa: E402
from rpoly.logging import setup_logging  # noqa: E402


async def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.json_logs)
    await run_agent(settings)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\n👋 Agent stopped.\n")
