"""Gas and provision arithmetic shared by the cache and the market."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from .offers import raw_id_to_id
from .units import NATIVE_DECIMALS, from_units, to_decimal


MAX_MARKET_ORDER_GAS = 10_000_000
GWEI = 10**9


@dataclass(frozen=True)
class RawLocalConfig:
    """Per offer list configuration in ledger encoding (density in outbound units per gas)."""

    active: bool
    fee: int
    density: int
    offer_gasbase: int
    lock: bool
    best: int = 0
    last: int = 0


@dataclass(frozen=True)
class LocalConfig:
    active: bool
    fee: int  # basis points of the outbound token received by the taker
    density: Decimal
    offer_gasbase: int
    lock: bool
    best: Optional[int]
    last: Optional[int]


@dataclass(frozen=True)
class GlobalConfig:
    monitor: str
    use_oracle: bool
    notify: bool
    gasprice: int
    gasmax: int
    dead: bool


def raw_local_config_to_local_config(raw: RawLocalConfig, outbound_decimals: int) -> LocalConfig:
    return LocalConfig(
        active=bool(raw.active),
        fee=int(raw.fee),
        density=from_units(raw.density, outbound_decimals),
        offer_gasbase=int(raw.offer_gasbase),
        lock=bool(raw.lock),
        best=raw_id_to_id(raw.best),
        last=raw_id_to_id(raw.last),
    )


def calculate_offer_provision(gasprice: int, gasreq: int, gasbase: int) -> Decimal:
    """Provision (in native units) locked by an offer; gasprice is in gwei."""
    return from_units(GWEI * int(gasprice) * (int(gasreq) + int(gasbase)), NATIVE_DECIMALS)


def calculate_offers_provision(offers: Iterable[Mapping[str, int]]) -> Decimal:
    total = Decimal(0)
    for offer in offers:
        total += calculate_offer_provision(offer["gasprice"], offer["gasreq"], offer["gasbase"])
    return total


def get_missing_provision(locked_provision, total_required_provision) -> Decimal:
    locked = to_decimal(locked_provision)
    total = to_decimal(total_required_provision)
    if total > locked:
        return total - locked
    return Decimal(0)


def estimate_market_order_gas(
    density: int,
    offer_gasbase: int,
    volume: int,
    max_gasreq: Optional[int],
    cap: int = MAX_MARKET_ORDER_GAS,
) -> int:
    """Upper-bound gas for a market order of `volume` outbound units, boosted by 10%.

    A list with zero density yields the cap.
    """
    if int(density) == 0:
        return cap
    gasreq = int(max_gasreq or 0)
    estimation = (int(offer_gasbase) + int(volume) // int(density) + gasreq + gasreq * 64 // 63) * 11 // 10
    return min(estimation, cap)


def simulated_gas_with_overhead(gas: int, cap: int = MAX_MARKET_ORDER_GAS) -> int:
    """Add 50% to a simulated gas figure; the book may move before execution."""
    return min(int(gas) * 15 // 10, cap)
