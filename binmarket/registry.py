"""
Market registry. Creates market engines and keeps them in creation order.

The registry holds the one collateral ledger all markets share; each new
market gets its own custody account in it. After creation the registry
never touches a market again: every mutation goes through the engine.
"""

import logging

from binmarket.collateral import CollateralLedger
from binmarket.engine import MarketEngine
from binmarket.errors import CustodyCaller, MarketNotFound
from binmarket.models import Event, Market, MARKET_CREATED


logger = logging.getLogger(__name__)


class MarketRegistry:

    def __init__(self, collateral: CollateralLedger | None = None):
        self.collateral = collateral or CollateralLedger()
        self.markets: dict[int, MarketEngine] = {}
        self.events: list[Event] = []

    def create_market(self, owner: int, question: str,
                      description: str = "") -> MarketEngine:
        """
        Instantiate an uninitialized market owned by `owner`.
        The owner must exist in the collateral ledger and must not be a
        custody account.
        """
        if self.collateral.get_account(owner).is_custody:
            raise CustodyCaller(f"account {owner} is a market custody account")
        custody = self.collateral.create_account(is_custody=True)
        market = Market.new(owner=owner, custody_account_id=custody.id,
                            question=question, description=description)
        engine = self.add(market)
        self.events.append(Event.new(MARKET_CREATED, market.id, owner,
                                     question=question))
        logger.info("market %d created: owner=%d custody=%d",
                    market.id, owner, custody.id)
        return engine

    def add(self, market: Market) -> MarketEngine:
        """Register an existing market record. Used when loading state."""
        engine = MarketEngine(market, self.collateral)
        self.markets[market.id] = engine
        return engine

    def get(self, market_id: int) -> MarketEngine:
        engine = self.markets.get(market_id)
        if engine is None:
            raise MarketNotFound(f"market {market_id} not found")
        return engine

    def market_count(self) -> int:
        return len(self.markets)

    def market_at(self, index: int) -> MarketEngine:
        """Market by creation order, 0-based."""
        engines = list(self.markets.values())
        if not 0 <= index < len(engines):
            raise MarketNotFound(f"no market at index {index}")
        return engines[index]
