"""Read access to the trade ledger."""

import logging
from typing import List

from sqlalchemy import select

from ..models import Trade
from .gains_engine import TradeRecord

logger = logging.getLogger(__name__)


class TradeLedger:
    """Loads a user's trades as detached snapshots.

    The ledger is never locked: a calculation sees whatever was committed
    when the read ran.
    """

    def __init__(self, session_maker):
        """Initialize trade ledger.

        Args:
            session_maker: Async session factory
        """
        self.session_maker = session_maker

    async def trades_for_user(self, user_id: str) -> List[TradeRecord]:
        """All trades for user_id, ascending by execution time."""
        async with self.session_maker() as session:
            query = select(Trade).where(
                Trade.user_id == user_id
            ).order_by(Trade.executed_at, Trade.id)

            result = await session.execute(query)
            trades = result.scalars().all()

        logger.debug(f"Loaded {len(trades)} trade(s) for user {user_id}")
        return [TradeRecord.from_trade(t) for t in trades]
