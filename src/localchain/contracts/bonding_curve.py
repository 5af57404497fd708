# src/localchain/contracts/bonding_curve.py
from __future__ import annotations

"""Bonding-curve pricing over a Token's balances.

Supported curves (s = supply):

    linear:       price = k * s
    polynomial:   price = k * s**n
    exponential:  price = k * exp(r * s)

The cost of moving supply from s1 to s2 is the integral of price over
[s1, s2]. Converting a payment into a token amount inverts that integral by
bisection, capped at MAX_ITERATIONS with absolute tolerance TOLERANCE.
"""

import math
import secrets
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Literal

from localchain.contracts.runtime import Capabilities, ReadView, SmartContract
from localchain.contracts.schemas import BuyArgs, SellArgs, parse_args
from localchain.contracts.token import Token, balance_key, read_balance
from localchain.errors import ProcedureError
from localchain.runtime.block import BONDING_CURVE_BUY, BONDING_CURVE_SELL

Json = Dict[str, Any]

CurveType = Literal["linear", "polynomial", "exponential"]

MAX_ITERATIONS = 100
TOLERANCE = 1e-4
# Doublings allowed while bracketing the bisection upper bound.
MAX_BRACKET_STEPS = 64

SUPPLY_KEY = "bonding-curve:supply"
PAYMENTS_KEY = "bonding-curve:payments"
CONFIG_KEY = "bonding-curve:config"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _exp(x: float) -> float:
    try:
        return math.exp(x)
    except OverflowError:
        return math.inf


def _pow(base: float, exponent: float) -> float:
    try:
        return float(base**exponent)
    except OverflowError:
        return math.inf


@dataclass(frozen=True)
class Curve:
    curve_type: CurveType = "linear"
    k: float = 0.001
    n: float = 2
    r: float = 0.01

    def __post_init__(self) -> None:
        if self.curve_type not in ("linear", "polynomial", "exponential"):
            raise ValueError(f"Unknown curve type: {self.curve_type}")
        if not self.k > 0:
            raise ValueError("k must be > 0")
        if self.curve_type == "polynomial" and self.n < 0:
            raise ValueError("n must be >= 0")
        if self.curve_type == "exponential" and self.r == 0:
            raise ValueError("r must be non-zero for an exponential curve")

    def to_json(self) -> Json:
        return asdict(self)

    @classmethod
    def from_json(cls, obj: Json) -> "Curve":
        return cls(
            curve_type=obj.get("curve_type", "linear"),
            k=float(obj.get("k", 0.001)),
            n=float(obj.get("n", 2)),
            r=float(obj.get("r", 0.01)),
        )

    def price(self, supply: float) -> float:
        if self.curve_type == "linear":
            return self.k * supply
        if self.curve_type == "polynomial":
            return self.k * _pow(supply, self.n)
        return self.k * _exp(self.r * supply)

    def integral(self, s1: float, s2: float) -> float:
        """Total cost of moving supply from s1 to s2.

        Saturates to math.inf when a term leaves the float range, so callers
        comparing against a finite payment still see "too expensive".
        """
        if self.curve_type == "linear":
            return (self.k / 2) * (s2 * s2 - s1 * s1)
        if self.curve_type == "polynomial":
            hi, lo = _pow(s2, self.n + 1), _pow(s1, self.n + 1)
            if math.isinf(hi) or math.isinf(lo):
                return math.inf
            return (self.k / (self.n + 1)) * (hi - lo)
        hi, lo = _exp(self.r * s2), _exp(self.r * s1)
        if math.isinf(hi) or math.isinf(lo):
            return math.inf
        return (self.k / self.r) * (hi - lo)

    def tokens_for_payment(self, current_supply: float, payment: float) -> float:
        """How many tokens `payment` buys at `current_supply`."""
        if payment <= 0:
            return 0.0

        low = current_supply
        high = current_supply + payment / self.k
        for _ in range(MAX_BRACKET_STEPS):
            if self.integral(current_supply, high) >= payment:
                break
            high = current_supply + 2 * (high - current_supply)

        for _ in range(MAX_ITERATIONS):
            mid = (low + high) / 2
            cost = self.integral(current_supply, mid)
            if abs(cost - payment) < TOLERANCE:
                return mid - current_supply
            if cost < payment:
                low = mid
            else:
                high = mid

        return (low + high) / 2 - current_supply

    def payment_for_tokens(self, current_supply: float, token_amount: float) -> float:
        return self.integral(current_supply, current_supply + token_amount)

    def payment_for_sale(self, current_supply: float, token_amount: float) -> float:
        new_supply = current_supply - token_amount
        if new_supply < 0:
            raise ValueError("Cannot sell more tokens than exist")
        return self.integral(new_supply, current_supply)


async def _load_curve(view: ReadView) -> Curve:
    cfg = await view.get(CONFIG_KEY)
    if not isinstance(cfg, dict):
        raise ProcedureError("curve_not_initialized", "bonding curve config is missing")
    try:
        return Curve.from_json(cfg)
    except (TypeError, ValueError) as e:
        raise ProcedureError("curve_invalid", str(e)) from e


async def _supply(view: ReadView) -> float:
    rec = await view.get(SUPPLY_KEY, {"supply": 0})
    return rec.get("supply", 0)


async def _payments(view: ReadView) -> float:
    rec = await view.get(PAYMENTS_KEY, {"total": 0})
    return rec.get("total", 0)


async def buy_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    a = parse_args(BuyArgs, args)
    if a.payment_amount <= 0:
        raise ProcedureError("non_positive_amount", "Payment amount must be positive")

    curve = await _load_curve(view)
    current = await _supply(view)

    token_amount = curve.tokens_for_payment(current, a.payment_amount)
    if token_amount <= 0:
        raise ProcedureError("non_positive_amount", "Token amount must be positive")

    # May differ slightly from payment_amount because of the bisection tolerance.
    actual = curve.payment_for_tokens(current, token_amount)
    if not (math.isfinite(actual) and math.isfinite(token_amount)):
        raise ProcedureError("amount_out_of_range", "Payment is outside the curve's numeric range")
    new_supply = current + token_amount

    buyer_balance = await read_balance(view, a.buyer)
    paid_total = await _payments(view)

    await caps.storage.save_data(SUPPLY_KEY, {"supply": new_supply, "updated_ms": _now_ms()})
    await caps.storage.save_data(
        balance_key(a.buyer),
        {"address": a.buyer, "balance": buyer_balance + token_amount, "updated_ms": _now_ms()},
    )
    await caps.storage.save_data(PAYMENTS_KEY, {"total": paid_total + actual, "updated_ms": _now_ms()})

    tx_id = f"buy-{_now_ms()}-{secrets.token_hex(5)}"
    await caps.chain.add_block(
        {
            "type": BONDING_CURVE_BUY,
            "buyer": a.buyer,
            "payment_amount": actual,
            "token_amount": token_amount,
            "price": actual / token_amount,
            "supply_before": current,
            "supply_after": new_supply,
            "timestamp": _now_ms(),
            "tx_id": tx_id,
        }
    )

    return {
        "success": True,
        "tx_id": tx_id,
        "token_amount": token_amount,
        "payment_amount": actual,
        "price": actual / token_amount,
        "new_supply": new_supply,
        "buyer_balance": buyer_balance + token_amount,
    }


async def sell_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    a = parse_args(SellArgs, args)
    if a.token_amount <= 0:
        raise ProcedureError("non_positive_amount", "Token amount must be positive")

    seller_balance = await read_balance(view, a.seller)
    if seller_balance < a.token_amount:
        raise ProcedureError("insufficient_balance", f"Insufficient balance. Available: {seller_balance}")

    curve = await _load_curve(view)
    current = await _supply(view)
    if current < a.token_amount:
        raise ProcedureError("exceeds_supply", "Cannot sell more tokens than total supply")

    payment = curve.payment_for_sale(current, a.token_amount)
    if not math.isfinite(payment):
        raise ProcedureError("amount_out_of_range", "Sale is outside the curve's numeric range")
    new_supply = current - a.token_amount
    paid_total = await _payments(view)

    await caps.storage.save_data(SUPPLY_KEY, {"supply": new_supply, "updated_ms": _now_ms()})
    await caps.storage.save_data(
        balance_key(a.seller),
        {"address": a.seller, "balance": seller_balance - a.token_amount, "updated_ms": _now_ms()},
    )
    await caps.storage.save_data(PAYMENTS_KEY, {"total": max(0, paid_total - payment), "updated_ms": _now_ms()})

    tx_id = f"sell-{_now_ms()}-{secrets.token_hex(5)}"
    await caps.chain.add_block(
        {
            "type": BONDING_CURVE_SELL,
            "seller": a.seller,
            "payment_amount": payment,
            "token_amount": a.token_amount,
            "price": payment / a.token_amount,
            "supply_before": current,
            "supply_after": new_supply,
            "timestamp": _now_ms(),
            "tx_id": tx_id,
        }
    )

    return {
        "success": True,
        "tx_id": tx_id,
        "token_amount": a.token_amount,
        "payment_amount": payment,
        "price": payment / a.token_amount,
        "new_supply": new_supply,
        "seller_balance": seller_balance - a.token_amount,
    }


class BondingCurve:
    """Buy/sell a Token against a pricing curve.

    The curve parameters are persisted at CONFIG_KEY by initialize(), so the
    procedures read them like any other record.
    """

    def __init__(self, token: Token, curve: Curve | None = None) -> None:
        self.token = token
        self.curve = curve or Curve()
        self._storage = token.storage
        self._chain = token.chain
        self.buy_contract = SmartContract("bonding-curve-buy", buy_procedure, storage=self._storage, chain=self._chain)
        self.sell_contract = SmartContract(
            "bonding-curve-sell", sell_procedure, storage=self._storage, chain=self._chain
        )

    async def initialize(self) -> None:
        stored = await self._storage.load_data_or(CONFIG_KEY)
        if stored is None:
            await self._storage.save_data(CONFIG_KEY, self.curve.to_json())
            return
        if Curve.from_json(stored) != self.curve:
            raise ValueError(f"stored curve {stored} differs from requested {self.curve.to_json()}")

    async def buy(self, buyer: str, payment_amount: float) -> Json:
        res = await self.buy_contract.execute(
            {"id": f"buy-{uuid.uuid4().hex}", "buyer": buyer, "payment_amount": payment_amount}
        )
        return res.unwrap()

    async def sell(self, seller: str, token_amount: float) -> Json:
        res = await self.sell_contract.execute(
            {"id": f"sell-{uuid.uuid4().hex}", "seller": seller, "token_amount": token_amount}
        )
        return res.unwrap()

    async def supply(self) -> float:
        rec = await self._storage.load_data_or(SUPPLY_KEY)
        return rec.get("supply", 0) if isinstance(rec, dict) else 0

    async def current_price(self) -> float:
        return self.curve.price(await self.supply())

    async def payment_reserve(self) -> float:
        rec = await self._storage.load_data_or(PAYMENTS_KEY)
        return rec.get("total", 0) if isinstance(rec, dict) else 0

    def curve_info(self) -> Json:
        return self.curve.to_json()
