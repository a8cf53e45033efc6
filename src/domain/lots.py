from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Iterator, Mapping
from uuid import uuid4

from pydantic import BaseModel

from .currency import Currency, ExchangeRateSnapshot, Money, convert_currency
from .ledger import (
    ACQUISITION_TYPES,
    DISPOSAL_TYPES,
    HoldingKey,
    LotId,
    Portfolio,
    PriceKey,
    Transaction,
    TransactionId,
    TransactionType,
)

logger = logging.getLogger(__name__)

DEFAULT_DUST = Decimal("1e-9")


class LedgerError(Exception):
    def __init__(
        self,
        message: str,
        *,
        transaction: Transaction | None = None,
        key: HoldingKey | None = None,
    ) -> None:
        super().__init__(message)
        self.transaction = transaction
        self.key = key


class OversellError(LedgerError):
    def __init__(
        self,
        message: str,
        *,
        transaction: Transaction,
        key: HoldingKey,
        quantity_requested: Decimal,
        quantity_available: Decimal,
    ) -> None:
        super().__init__(message, transaction=transaction, key=key)
        self.quantity_requested = quantity_requested
        self.quantity_available = quantity_available


class UnknownPortfolioError(LedgerError):
    pass


@dataclass
class _OpenLotState:
    lot_id: LotId
    source_transaction_id: TransactionId
    acquisition_date: date
    original_qty: Decimal
    remaining_qty: Decimal
    cost: Decimal
    cost_base: Decimal
    fees: Decimal
    dividend_reinvestment: bool = False


class LotSnapshot(BaseModel):
    lot_id: LotId
    portfolio_id: str
    ticker: str
    source_transaction_id: TransactionId
    acquisition_date: date
    original_qty: Decimal
    remaining_qty: Decimal
    cost_basis: Money
    cost_basis_base: Money
    fees: Money
    dividend_reinvestment: bool = False

    @property
    def key(self) -> HoldingKey:
        return HoldingKey(portfolio_id=self.portfolio_id, ticker=self.ticker)

    @property
    def cost_per_unit(self) -> Decimal:
        if self.remaining_qty == 0:
            return Decimal(0)
        return self.cost_basis.amount / self.remaining_qty


class SaleAllocation(BaseModel):
    """The part of one lot consumed by one disposal, in the holding currency."""

    lot_id: LotId
    transaction_id: TransactionId
    portfolio_id: str
    ticker: str
    acquisition_date: date
    sale_date: date
    qty: Decimal
    cost: Decimal
    cost_base: Decimal
    buy_fees: Decimal
    sell_fees: Decimal
    proceeds: Decimal
    proceeds_base: Decimal
    is_transfer: bool = False
    dividend_reinvestment: bool = False

    @property
    def realized_gain(self) -> Decimal:
        if self.is_transfer:
            return Decimal(0)
        return self.proceeds - self.cost

    @property
    def realized_gain_net(self) -> Decimal:
        if self.is_transfer:
            return Decimal(0)
        return self.proceeds - self.cost - self.buy_fees - self.sell_fees


class SaleResult(BaseModel):
    transaction_id: TransactionId
    allocations: list[SaleAllocation]

    @property
    def realized_gain(self) -> Decimal:
        return sum((allocation.realized_gain for allocation in self.allocations), start=Decimal(0))


class DividendRecord(BaseModel):
    transaction_id: TransactionId
    portfolio_id: str
    ticker: str
    paid_date: date
    gross: Decimal
    gross_base: Decimal
    fee: Decimal
    reinvested_qty: Decimal

    @property
    def reinvested(self) -> bool:
        return self.reinvested_qty > 0


@dataclass
class HoldingState:
    """Ledger view of one (portfolio, ticker); quantities derive from the open lots."""

    key: HoldingKey
    exchange: str
    currency: Currency
    open_lots: list[LotSnapshot] = field(default_factory=list)
    sales: list[SaleAllocation] = field(default_factory=list)
    dividends: list[DividendRecord] = field(default_factory=list)
    income: Decimal = Decimal(0)
    fees: Decimal = Decimal(0)
    commissions: Decimal = Decimal(0)
    pending: list[Transaction] = field(default_factory=list)

    @property
    def price_key(self) -> PriceKey:
        return PriceKey(exchange=self.exchange, ticker=self.key.ticker)

    @property
    def total_qty(self) -> Decimal:
        return sum((lot.remaining_qty for lot in self.open_lots), start=Decimal(0))

    @property
    def cost_basis(self) -> Decimal:
        return sum((lot.cost_basis.amount for lot in self.open_lots), start=Decimal(0))

    @property
    def cost_basis_base(self) -> Decimal:
        return sum((lot.cost_basis_base.amount for lot in self.open_lots), start=Decimal(0))

    @property
    def avg_cost(self) -> Decimal:
        qty = self.total_qty
        if qty == 0:
            return Decimal(0)
        return self.cost_basis / qty

    @property
    def realized_gain(self) -> Decimal:
        return sum((sale.realized_gain for sale in self.sales), start=Decimal(0))

    @property
    def cost_of_sold(self) -> Decimal:
        return sum((sale.cost for sale in self.sales if not sale.is_transfer), start=Decimal(0))

    @property
    def dividend_income(self) -> Decimal:
        return sum((record.gross for record in self.dividends), start=Decimal(0))

    @property
    def unvested_qty(self) -> Decimal:
        return sum(
            (txn.qty for txn in self.pending if txn.type in ACQUISITION_TYPES),
            start=Decimal(0),
        )


@dataclass
class LedgerResult:
    holdings: dict[HoldingKey, HoldingState]
    sales: list[SaleResult]

    def holding(self, key: HoldingKey) -> HoldingState:
        state = self.holdings.get(key)
        if state is None:
            msg = f"Unknown holding {key}"
            raise KeyError(msg)
        return state

    def for_portfolio(self, portfolio_id: str) -> list[HoldingState]:
        return [state for key, state in sorted(self.holdings.items()) if key.portfolio_id == portfolio_id]


@dataclass
class _HoldingAccount:
    key: HoldingKey
    exchange: str
    currency: Currency
    lots: deque[_OpenLotState] = field(default_factory=deque)
    sales: list[SaleAllocation] = field(default_factory=list)
    dividends: list[DividendRecord] = field(default_factory=list)
    income: Decimal = Decimal(0)
    fees: Decimal = Decimal(0)
    commissions: Decimal = Decimal(0)
    pending: list[Transaction] = field(default_factory=list)

    @property
    def total_qty(self) -> Decimal:
        return sum((lot.remaining_qty for lot in self.lots), start=Decimal(0))


class LotLedger:
    """FIFO tax-lot accounting per (portfolio, ticker).

    Lots are kept in the security's own currency. Base-currency cost is fixed at
    acquisition using the transaction's `base_rate`, or the snapshot rate for
    that day when the transaction carries none.
    """

    def __init__(
        self,
        *,
        portfolios: Mapping[str, Portfolio],
        snapshot: ExchangeRateSnapshot,
        base_currency: Currency = Currency.ILS,
        dust: Decimal = DEFAULT_DUST,
    ) -> None:
        self._portfolios = portfolios
        self._snapshot = snapshot
        self._base_currency = base_currency
        self._dust = dust
        self._accounts: dict[HoldingKey, _HoldingAccount] = {}
        self._sales: list[SaleResult] = []

    def process(self, transactions: Iterable[Transaction], *, as_of: date | None = None) -> LedgerResult:
        """Apply transactions in effective-date order, keeping recorded order within a day.

        Transactions vesting after `as_of` are parked on the holding as pending.
        """
        ordered = sorted(transactions, key=lambda txn: txn.effective_date)
        for txn in ordered:
            if txn.type == TransactionType.DIV_EVENT and txn.holding_key not in self._accounts:
                logger.debug("Skipping dividend event for %s with no position", txn.holding_key)
                continue
            if as_of is not None and txn.type != TransactionType.DIV_EVENT and not txn.is_vested(as_of):
                logger.info(
                    "Deferring %s %s for %s until %s",
                    txn.type,
                    txn.ticker,
                    txn.portfolio_id,
                    txn.effective_date.isoformat(),
                )
                self._account_for(txn).pending.append(txn)
                continue
            self.apply(txn)
        return self.result()

    def apply(self, txn: Transaction) -> SaleResult | LotSnapshot | DividendRecord | None:
        if txn.type in ACQUISITION_TYPES:
            return self.apply_buy(txn)
        if txn.type in DISPOSAL_TYPES:
            return self.apply_sell(txn)
        if txn.type in (TransactionType.DIVIDEND, TransactionType.DIV_EVENT):
            return self.apply_dividend(txn)
        if txn.type == TransactionType.FEE:
            self.apply_fee(txn)
            return None
        msg = f"Unsupported transaction type {txn.type}"
        raise LedgerError(msg, transaction=txn)

    def apply_buy(self, txn: Transaction) -> LotSnapshot:
        if txn.type not in ACQUISITION_TYPES:
            raise LedgerError(f"apply_buy got {txn.type}", transaction=txn, key=txn.holding_key)
        account = self._account_for(txn)
        cost = self._to_holding_currency(account, txn.value(), txn)
        state = _OpenLotState(
            lot_id=LotId(uuid4()),
            source_transaction_id=txn.id,
            acquisition_date=txn.effective_date,
            original_qty=txn.qty,
            remaining_qty=txn.qty,
            cost=cost,
            cost_base=self._to_base(account, cost, txn),
            fees=self._commission(account, txn),
        )
        account.commissions += state.fees
        account.lots.append(state)
        return self._lot_snapshot(account, state)

    def apply_sell(self, txn: Transaction) -> SaleResult:
        if txn.type not in DISPOSAL_TYPES:
            raise LedgerError(f"apply_sell got {txn.type}", transaction=txn, key=txn.holding_key)
        account = self._account_for(txn)
        available = account.total_qty
        if txn.qty > available + self._dust:
            raise OversellError(
                f"Cannot sell {txn.qty} {txn.ticker} from {txn.portfolio_id}: only {available} held "
                f"(txn={txn.id} on {txn.trade_date.isoformat()})",
                transaction=txn,
                key=account.key,
                quantity_requested=txn.qty,
                quantity_available=available,
            )

        is_transfer = txn.type == TransactionType.SELL_TRANSFER
        proceeds_total = self._to_holding_currency(account, txn.value(), txn)
        sell_fees_total = self._commission(account, txn)
        account.commissions += sell_fees_total

        allocations: list[SaleAllocation] = []
        for lot_state, take_qty, cost, cost_base, buy_fees in self._consume(account, min(txn.qty, available)):
            share = take_qty / txn.qty
            proceeds = proceeds_total * share
            allocations.append(
                SaleAllocation(
                    lot_id=lot_state.lot_id,
                    transaction_id=txn.id,
                    portfolio_id=account.key.portfolio_id,
                    ticker=account.key.ticker,
                    acquisition_date=lot_state.acquisition_date,
                    sale_date=txn.effective_date,
                    qty=take_qty,
                    cost=cost,
                    cost_base=cost_base,
                    buy_fees=buy_fees,
                    sell_fees=sell_fees_total * share,
                    proceeds=proceeds,
                    proceeds_base=self._to_base(account, proceeds, txn),
                    is_transfer=is_transfer,
                    dividend_reinvestment=lot_state.dividend_reinvestment,
                )
            )

        account.sales.extend(allocations)
        result = SaleResult(transaction_id=txn.id, allocations=allocations)
        self._sales.append(result)
        return result

    def apply_dividend(self, txn: Transaction) -> DividendRecord:
        if txn.type not in (TransactionType.DIVIDEND, TransactionType.DIV_EVENT):
            raise LedgerError(f"apply_dividend got {txn.type}", transaction=txn, key=txn.holding_key)
        account = self._account_for(txn)
        portfolio = self._portfolio_for(txn)

        reinvest_qty = Decimal(0)
        if txn.type == TransactionType.DIV_EVENT:
            gross = self._to_holding_currency(account, account.total_qty * txn.price, txn)
        else:
            gross = self._to_holding_currency(account, txn.value(), txn)
            if portfolio.reinvests_dividends():
                reinvest_qty = txn.qty
            elif txn.qty > 0:
                logger.debug("Ignoring reinvest qty %s on cash dividend %s", txn.qty, txn.id)

        fee = gross * portfolio.fee_settings_on(txn.effective_date).div_comm_rate
        account.income += gross - fee
        account.fees += fee

        if reinvest_qty > 0:
            state = _OpenLotState(
                lot_id=LotId(uuid4()),
                source_transaction_id=txn.id,
                acquisition_date=txn.effective_date,
                original_qty=reinvest_qty,
                remaining_qty=reinvest_qty,
                cost=gross,
                cost_base=self._to_base(account, gross, txn),
                fees=Decimal(0),
                dividend_reinvestment=True,
            )
            account.lots.append(state)

        record = DividendRecord(
            transaction_id=txn.id,
            portfolio_id=account.key.portfolio_id,
            ticker=account.key.ticker,
            paid_date=txn.effective_date,
            gross=gross,
            gross_base=self._to_base(account, gross, txn),
            fee=fee,
            reinvested_qty=reinvest_qty,
        )
        if record.gross > 0 or txn.type == TransactionType.DIVIDEND:
            account.dividends.append(record)
        return record

    def apply_fee(self, txn: Transaction) -> None:
        if txn.type != TransactionType.FEE:
            raise LedgerError(f"apply_fee got {txn.type}", transaction=txn, key=txn.holding_key)
        account = self._account_for(txn)
        amount = self._to_holding_currency(account, txn.value(), txn)
        account.income -= amount
        account.fees += amount

    def open_lots(self, key: HoldingKey) -> list[LotSnapshot]:
        account = self._accounts.get(key)
        if account is None:
            return []
        return [self._lot_snapshot(account, state) for state in account.lots]

    def result(self) -> LedgerResult:
        holdings: dict[HoldingKey, HoldingState] = {}
        for key, account in sorted(self._accounts.items()):
            holdings[key] = HoldingState(
                key=key,
                exchange=account.exchange,
                currency=account.currency,
                open_lots=self.open_lots(key),
                sales=list(account.sales),
                dividends=list(account.dividends),
                income=account.income,
                fees=account.fees,
                commissions=account.commissions,
                pending=list(account.pending),
            )
        return LedgerResult(holdings=holdings, sales=list(self._sales))

    def _consume(
        self, account: _HoldingAccount, quantity: Decimal
    ) -> Iterator[tuple[_OpenLotState, Decimal, Decimal, Decimal, Decimal]]:
        """Yield (lot, qty, cost, base cost, buy fees) taken oldest lot first."""
        remaining = quantity
        while remaining > 0 and account.lots:
            lot_state = account.lots[0]
            take_qty = min(remaining, lot_state.remaining_qty)
            if take_qty == lot_state.remaining_qty:
                cost, cost_base, fees = lot_state.cost, lot_state.cost_base, lot_state.fees
            else:
                fraction = take_qty / lot_state.remaining_qty
                cost = lot_state.cost * fraction
                cost_base = lot_state.cost_base * fraction
                fees = lot_state.fees * fraction

            lot_state.remaining_qty -= take_qty
            lot_state.cost -= cost
            lot_state.cost_base -= cost_base
            lot_state.fees -= fees
            remaining -= take_qty
            if lot_state.remaining_qty <= self._dust:
                if lot_state.remaining_qty > 0:
                    logger.debug("Dropping dust lot %s (%s left)", lot_state.lot_id, lot_state.remaining_qty)
                account.lots.popleft()
            yield lot_state, take_qty, cost, cost_base, fees

    def _account_for(self, txn: Transaction) -> _HoldingAccount:
        self._portfolio_for(txn)
        key = txn.holding_key
        account = self._accounts.get(key)
        if account is None:
            account = _HoldingAccount(key=key, exchange=txn.exchange, currency=txn.currency)
            self._accounts[key] = account
        return account

    def _portfolio_for(self, txn: Transaction) -> Portfolio:
        portfolio = self._portfolios.get(txn.portfolio_id)
        if portfolio is None:
            raise UnknownPortfolioError(
                f"Portfolio {txn.portfolio_id} not found for txn={txn.id}",
                transaction=txn,
                key=txn.holding_key,
            )
        return portfolio

    def _to_holding_currency(self, account: _HoldingAccount, amount: Decimal, txn: Transaction) -> Decimal:
        return convert_currency(amount, txn.currency, account.currency, self._snapshot, on=txn.trade_date)

    def _to_base(self, account: _HoldingAccount, amount: Decimal, txn: Transaction) -> Decimal:
        if txn.base_rate is not None and txn.currency == account.currency:
            return amount * txn.base_rate
        return convert_currency(amount, account.currency, self._base_currency, self._snapshot, on=txn.trade_date)

    def _commission(self, account: _HoldingAccount, txn: Transaction) -> Decimal:
        if txn.commission is None:
            if txn.type not in (TransactionType.BUY, TransactionType.SELL):
                return Decimal(0)
            portfolio = self._portfolio_for(txn)
            settings = portfolio.fee_settings_on(txn.trade_date)
            if settings.comm_rate == 0 and settings.comm_min == 0:
                return Decimal(0)
            trade_value = convert_currency(
                txn.value(), txn.currency, portfolio.currency, self._snapshot, on=txn.trade_date
            )
            fee = portfolio.commission_for(trade_value, txn.trade_date)
            return convert_currency(fee, portfolio.currency, account.currency, self._snapshot, on=txn.trade_date)
        if txn.commission == 0:
            return Decimal(0)
        return self._to_holding_currency(account, txn.commission, txn)

    def _lot_snapshot(self, account: _HoldingAccount, state: _OpenLotState) -> LotSnapshot:
        return LotSnapshot(
            lot_id=state.lot_id,
            portfolio_id=account.key.portfolio_id,
            ticker=account.key.ticker,
            source_transaction_id=state.source_transaction_id,
            acquisition_date=state.acquisition_date,
            original_qty=state.original_qty,
            remaining_qty=state.remaining_qty,
            cost_basis=Money(amount=state.cost, currency=account.currency),
            cost_basis_base=Money(amount=state.cost_base, currency=self._base_currency),
            fees=Money(amount=state.fees, currency=account.currency),
            dividend_reinvestment=state.dividend_reinvestment,
        )


__all__ = [
    "DEFAULT_DUST",
    "DividendRecord",
    "HoldingState",
    "LedgerError",
    "LedgerResult",
    "LotLedger",
    "LotSnapshot",
    "OversellError",
    "SaleAllocation",
    "SaleResult",
    "UnknownPortfolioError",
]
