"""
Trade history — append-only log of completed trades.

One workflow state key: ``trade_history``

    {
      "trades": [
        {"trade_id": "9f1c...", "market_id": "0xabc", "won": true, "pnl": 0.42,
         "side": "YES", "size": 2.0, "entry_price": 0.48, "exit_price": 0.69,
         "exit_type": "take-profit", "strategies": ["momentum"], ...}
      ]
    }

Records are never edited or removed. Every append rewrites the whole
document through WorkflowStateService (temp file + fsync + os.replace), so
a crash mid-write leaves the previous history intact.
"""

import structlog

from workflows.updown.models import TradeRecord
from workflows.updown.protocols import StateStore

logger = structlog.get_logger(__name__)

_STATE_KEY = "trade_history"


class TradeHistory:
    """Append-only TradeRecord log backed by ``WorkflowStateService``."""

    def __init__(self, state_service: StateStore | None = None) -> None:
        self._service = state_service
        self._trades: list[TradeRecord] = []
        self._ids: set[str] = set()

    async def load(self) -> list[TradeRecord]:
        if self._service is not None:
            data = await self._service.get(_STATE_KEY)
            raw = (data or {}).get("trades", [])
            self._trades = [TradeRecord(**t) for t in raw]
            self._ids = {t.trade_id for t in self._trades}
        logger.info("trade_history_loaded", trades=len(self._trades))
        return list(self._trades)

    async def append(self, record: TradeRecord) -> bool:
        """Append one record and persist. The in-memory log only changes once the write succeeded.

        Returns:
            False if a record with the same trade id already exists.

        Raises:
            PersistenceError: The write failed; the history is unchanged.
        """
        if record.trade_id in self._ids:
            logger.warning("trade_history_duplicate", trade_id=record.trade_id)
            return False

        trades = [*self._trades, record]
        if self._service is not None:
            await self._service.put(
                _STATE_KEY,
                {"trades": [t.model_dump(mode="json") for t in trades]},
            )
        self._trades = trades
        self._ids.add(record.trade_id)
        logger.info(
            "trade_appended",
            trade_id=record.trade_id,
            market_id=record.market_id,
            exit_type=record.exit_type,
            pnl=round(record.pnl, 4),
            total=len(self._trades),
        )
        return True

    @property
    def trades(self) -> list[TradeRecord]:
        return list(self._trades)

    def __contains__(self, trade_id: str) -> bool:
        return trade_id in self._ids

    def __len__(self) -> int:
        return len(self._trades)
