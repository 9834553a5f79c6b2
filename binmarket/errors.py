"""
Engine error taxonomy.

Every error aborts the whole operation. The engine never retries; the
caller decides whether to try again with different parameters.
`code` is the machine-readable name the API and CLI report.
"""


class MarketError(Exception):
    code = "market_error"


class NotOwner(MarketError):
    code = "not_owner"


class CustodyCaller(MarketError):
    """A market custody account tried to act as a participant."""
    code = "custody_caller"


class AlreadyInitialized(MarketError):
    code = "already_initialized"


class ZeroDeposit(MarketError):
    code = "zero_deposit"


class NotOpen(MarketError):
    """Trade on a market that is not initialized yet or already resolved."""
    code = "not_open"


class AlreadyResolved(MarketError):
    code = "already_resolved"


class NotResolved(MarketError):
    code = "not_resolved"


class InsufficientBalance(MarketError):
    code = "insufficient_balance"


class InsufficientCollateral(InsufficientBalance):
    """Account can't cover a collateral debit (payment or deposit)."""
    code = "insufficient_collateral"


class DustAmount(MarketError):
    """Computed output rounds to zero."""
    code = "dust_amount"


class SlippageExceeded(MarketError):
    code = "slippage_exceeded"


class InsufficientLiquidity(MarketError):
    """Reserve can't cover a payout, or a pool can't price the trade."""
    code = "insufficient_liquidity"


class PayoutFailed(MarketError):
    """Receiving account rejected the collateral transfer."""
    code = "payout_failed"


class NothingToRedeem(MarketError):
    code = "nothing_to_redeem"


class ArithmeticOverflow(MarketError):
    code = "arithmetic_overflow"


class ArithmeticUnderflow(MarketError):
    code = "arithmetic_underflow"


class ReentrantCall(MarketError):
    code = "reentrant_call"


class MarketNotFound(MarketError):
    code = "market_not_found"


class AccountNotFound(MarketError):
    code = "account_not_found"
