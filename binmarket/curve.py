"""
Ratio pricing curve: pure integer math, no state.

All functions take non-negative ints and return ints. Every division
floors. The caller (market engine) handles state and atomicity.

Notation:
    own:   pool of the side being traded
    other: pool of the opposite side
    price: other / own at fixed-point SCALE (1e18)

Buying only grows `own`, so each buy makes the bought side cheaper
relative to the other. This is not a constant-product curve, and the
pools are share counters, not collateral.
"""

from binmarket.errors import (
    ArithmeticOverflow, ArithmeticUnderflow, InsufficientLiquidity,
)
from binmarket.models import MAX_UINT, SCALE


# ---------------------------------------------------------------------------
# Checked arithmetic
# ---------------------------------------------------------------------------

def checked_add(a: int, b: int) -> int:
    result = a + b
    if result > MAX_UINT:
        raise ArithmeticOverflow(f"{a} + {b} overflows")
    return result


def checked_sub(a: int, b: int) -> int:
    if b > a:
        raise ArithmeticUnderflow(f"{a} - {b} underflows")
    return a - b


def checked_mul(a: int, b: int) -> int:
    result = a * b
    if result > MAX_UINT:
        raise ArithmeticOverflow(f"{a} * {b} overflows")
    return result


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

def spot_price(own: int, other: int) -> int:
    """
    Price of the other side in units of the traded side, scaled by SCALE.

    price = other * SCALE // own

    Raises InsufficientLiquidity when the curve can't price a trade: an
    empty own pool, or a ratio so skewed the price floors to zero.
    """
    if own == 0:
        raise InsufficientLiquidity("pool is empty")
    price = checked_mul(other, SCALE) // own
    if price == 0:
        raise InsufficientLiquidity(
            f"price rounds to zero (own={own}, other={other})")
    return price


def shares_for_payment(own: int, other: int, payment: int) -> int:
    """
    Shares received for `payment` collateral.

    dy = payment * SCALE // price   (≈ payment * own / other)
    """
    price = spot_price(own, other)
    return checked_mul(payment, SCALE) // price


def payment_for_shares(own: int, other: int, shares: int) -> int:
    """
    Collateral paid out for selling `shares`.

    out = shares * price // SCALE   (≈ shares * other / own)
    """
    price = spot_price(own, other)
    return checked_mul(shares, price) // SCALE


def redemption_payout(reserve: int, balance: int, supply: int) -> int:
    """
    Pro-rata share of the reserve: floor(reserve * balance / supply).

    Floor rounding means a full sequence of redemptions never pays out
    more than the reserve held at resolution.
    """
    if supply == 0:
        raise InsufficientLiquidity("winning supply is zero")
    if balance > supply:
        raise ArithmeticUnderflow(
            f"balance {balance} exceeds supply {supply}")
    return checked_mul(reserve, balance) // supply


def initial_split(deposit: int) -> tuple[int, int]:
    """Seed pools from the first deposit. Odd remainder gets no shares."""
    half = deposit // 2
    return half, half
