"""
Coin selection strategies.

A strategy picks UTXOs whose total covers the target plus the fee of the
transaction that spends them. Fees are computed from weights: the caller
passes the weight of everything except the inputs (``base_weight``) and
each candidate carries the worst-case weight of the input spending it.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from descwallet.errors import InsufficientFundsError
from descwallet.wallet.fees import fee_for_weight
from descwallet.wallet.models import UTXO, CoinSelection

# Weight of a P2WPKH change output and of the input that later spends it,
# used as the default cost of creating change
_DEFAULT_CHANGE_OUTPUT_WEIGHT = 31 * 4
_DEFAULT_CHANGE_SPEND_WEIGHT = 273

BNB_MAX_TRIES = 100_000


@dataclass(frozen=True)
class WeightedUtxo:
    """A UTXO with the worst-case weight of the input spending it."""

    utxo: UTXO
    satisfaction_weight: int

    @property
    def value(self) -> int:
        return self.utxo.value


class CoinSelectionStrategy(Protocol):
    def select(
        self,
        candidates: Sequence[WeightedUtxo],
        target: int,
        fee_rate: float,
        base_weight: int,
    ) -> CoinSelection:
        """Select from candidates or raise InsufficientFundsError."""
        ...


def _fee(selected: Sequence[WeightedUtxo], fee_rate: float, base_weight: int) -> int:
    weight = base_weight + sum(c.satisfaction_weight for c in selected)
    return fee_for_weight(weight, fee_rate)


def _accumulate(
    ordered: Sequence[WeightedUtxo], target: int, fee_rate: float, base_weight: int
) -> CoinSelection:
    """Take candidates in order until they pay for target and their own fee."""
    selected: list[WeightedUtxo] = []
    total = 0
    for candidate in ordered:
        selected.append(candidate)
        total += candidate.value
        fee = _fee(selected, fee_rate, base_weight)
        if total >= target + fee:
            return CoinSelection(
                utxos=[c.utxo for c in selected],
                total_value=total,
                change_value=total - target - fee,
                fee=fee,
            )

    needed = target + _fee(ordered, fee_rate, base_weight)
    raise InsufficientFundsError(needed=needed, available=total)


class LargestFirst:
    """Spend the largest UTXOs first. Ties break on (txid, vout)."""

    def select(
        self,
        candidates: Sequence[WeightedUtxo],
        target: int,
        fee_rate: float,
        base_weight: int,
    ) -> CoinSelection:
        ordered = sorted(candidates, key=lambda c: (-c.value, c.utxo.txid, c.utxo.vout))
        return _accumulate(ordered, target, fee_rate, base_weight)


class OldestFirst:
    """Spend the UTXOs with the most confirmations first."""

    def select(
        self,
        candidates: Sequence[WeightedUtxo],
        target: int,
        fee_rate: float,
        base_weight: int,
    ) -> CoinSelection:
        ordered = sorted(
            candidates,
            key=lambda c: (-c.utxo.confirmations, c.utxo.txid, c.utxo.vout),
        )
        return _accumulate(ordered, target, fee_rate, base_weight)


class BranchAndBound:
    """
    Search for an input set that needs no change output.

    Depth-first search over candidates sorted by effective value (value
    minus the fee of spending it), looking for a sum inside
    ``[target, target + cost_of_change]``; the smallest excess wins. When no
    such set is found within ``max_tries`` steps, the fallback strategy
    (LargestFirst by default) is used.
    """

    def __init__(
        self,
        cost_of_change: int | None = None,
        max_tries: int = BNB_MAX_TRIES,
        fallback: CoinSelectionStrategy | None = None,
    ):
        self.cost_of_change = cost_of_change
        self.max_tries = max_tries
        self.fallback = fallback or LargestFirst()

    def select(
        self,
        candidates: Sequence[WeightedUtxo],
        target: int,
        fee_rate: float,
        base_weight: int,
    ) -> CoinSelection:
        cost_of_change = self.cost_of_change
        if cost_of_change is None:
            cost_of_change = fee_for_weight(
                _DEFAULT_CHANGE_OUTPUT_WEIGHT, fee_rate
            ) + fee_for_weight(_DEFAULT_CHANGE_SPEND_WEIGHT, fee_rate)

        pool = []
        for candidate in candidates:
            effective = candidate.value - fee_for_weight(candidate.satisfaction_weight, fee_rate)
            if effective > 0:
                pool.append((effective, candidate))
        pool.sort(key=lambda p: (-p[0], p[1].utxo.txid, p[1].utxo.vout))

        selection_target = target + fee_for_weight(base_weight, fee_rate)
        found = _branch_and_bound(
            [p[0] for p in pool], selection_target, cost_of_change, self.max_tries
        )

        if found is not None:
            chosen = [pool[i][1] for i in found]
            total = sum(c.value for c in chosen)
            fee = _fee(chosen, fee_rate, base_weight)
            if total >= target + fee:
                logger.debug(f"Branch and bound found a changeless set of {len(chosen)} inputs")
                return CoinSelection(
                    utxos=[c.utxo for c in chosen],
                    total_value=total,
                    change_value=total - target - fee,
                    fee=fee,
                )

        logger.debug("Branch and bound found no match, falling back")
        return self.fallback.select(candidates, target, fee_rate, base_weight)


def _branch_and_bound(
    values: list[int], target: int, cost_of_change: int, max_tries: int
) -> list[int] | None:
    """
    Indexes of values summing into [target, target + cost_of_change].

    values must be positive and sorted in descending order. Same traversal
    as Bitcoin Core's SelectCoinsBnB: include-first depth-first search,
    pruning branches that can no longer reach the target or overshoot it.
    """
    available = sum(values)
    if available < target:
        return None

    best: list[int] | None = None
    best_excess: int | None = None
    selection: list[int] = []
    current = 0
    index = 0

    for _ in range(max_tries):
        backtrack = False
        if current + available < target or current > target + cost_of_change:
            backtrack = True
        elif current >= target:
            excess = current - target
            if best_excess is None or excess <= best_excess:
                best = list(selection)
                best_excess = excess
                if excess == 0:
                    break
            backtrack = True

        if backtrack:
            if not selection:
                break
            # Restore the values skipped after the last included one,
            # then try the branch that excludes it
            index -= 1
            while index > selection[-1]:
                available += values[index]
                index -= 1
            current -= values[selection.pop()]
            index += 1
        else:
            available -= values[index]
            selection.append(index)
            current += values[index]
            index += 1

    return best


DEFAULT_STRATEGY: CoinSelectionStrategy = LargestFirst()


def select_coins(
    utxos: Sequence[WeightedUtxo],
    target: int,
    fee_rate: float,
    strategy: CoinSelectionStrategy | None = None,
    *,
    base_weight: int,
    required: Sequence[WeightedUtxo] = (),
) -> CoinSelection:
    """
    Select coins paying for target plus fee.

    Args:
        utxos: Optional candidates
        target: Sum of recipient amounts in satoshis
        fee_rate: sat/vB
        strategy: Selection strategy (LargestFirst when None)
        base_weight: Weight of the transaction without any input
        required: UTXOs that must be spent regardless of the strategy

    Raises:
        InsufficientFundsError: shortfall is target + fee(all) - sum(all)
    """
    strategy = strategy or DEFAULT_STRATEGY
    if target < 0:
        raise ValueError(f"Negative target: {target}")

    required_outpoints = {c.utxo.outpoint for c in required}
    optional = [c for c in utxos if c.utxo.outpoint not in required_outpoints]

    if not required:
        selection = strategy.select(optional, target, fee_rate, base_weight)
    else:
        required_value = sum(c.value for c in required)
        required_fee = _fee(required, fee_rate, base_weight)
        if required_value >= target + required_fee:
            selection = CoinSelection(
                utxos=[c.utxo for c in required],
                total_value=required_value,
                change_value=required_value - target - required_fee,
                fee=required_fee,
            )
        else:
            required_weight = sum(c.satisfaction_weight for c in required)
            try:
                extra = strategy.select(
                    optional,
                    target - required_value,
                    fee_rate,
                    base_weight + required_weight,
                )
            except InsufficientFundsError as e:
                raise InsufficientFundsError(
                    needed=e.needed + required_value,
                    available=e.available + required_value,
                ) from None
            selection = CoinSelection(
                utxos=[c.utxo for c in required] + extra.utxos,
                total_value=required_value + extra.total_value,
                change_value=extra.change_value,
                fee=extra.fee,
            )

    logger.debug(
        f"Selected {len(selection.utxos)} UTXO(s) totalling {selection.total_value} sats, "
        f"fee {selection.fee} sats"
    )
    return selection
