"""Trade model - the user's trade ledger.

Trades are recorded by the ledger (wallet import, manual entry) and are
read-only from the gains engine's point of view.

Design constraints:
- Immutable once recorded
- Signed quantity: positive is an acquisition, negative a disposal
- Price and fee are USD amounts
"""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Index

from .database import Base
from .types import DecimalText


class Trade(Base):
    """Trade execution record.

    Example:
        BUY  1.0 BTC @ $30,000 (fee $5)  -> quantity=1.0
        SELL 0.4 BTC @ $40,000 (fee $2)  -> quantity=-0.4
    """
    __tablename__ = "trades"
    __table_args__ = (Index("ix_trades_user_executed", "user_id", "executed_at"),)

    id = Column(String(64), primary_key=True)
    user_id = Column(String(100), nullable=False, index=True)
    asset = Column(String(20), nullable=False)

    quantity = Column(DecimalText, nullable=False)     # Signed
    price_usd = Column(DecimalText, nullable=False)    # Unit price
    fee_usd = Column(DecimalText, nullable=False, default="0")

    executed_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return (
            f"<Trade(id={self.id}, {self.quantity} {self.asset} "
            f"@ ${self.price_usd})>"
        )

    @property
    def is_acquisition(self) -> bool:
        return self.quantity > 0

    @property
    def is_disposal(self) -> bool:
        return self.quantity < 0

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "asset": self.asset,
            "quantity": format(self.quantity, "f"),
            "price_usd": format(self.price_usd, "f"),
            "fee_usd": format(self.fee_usd, "f"),
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }
