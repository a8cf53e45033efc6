from __future__ import annotations

import argparse
import logging
from datetime import date
from pathlib import Path
from typing import Sequence

from config import config
from domain.currency import Currency, normalize_currency
from domain.holdings import HoldingValuator
from domain.lots import LedgerResult, LotLedger
from domain.performance import PerformanceEngine, PerformancePoint, calculate_period_returns
from domain.tax import TaxCalculator
from services.cpi import CpiSeries
from services.input_store import load_portfolios, load_rates, load_transactions
from services.price_service import PriceHistoryService
from services.price_store import JsonlPriceHistoryStore
from utils.formatting import format_currency, format_percent
from utils.summary import SummaryAggregator, render_dashboard_summary, render_holdings


def run(
    data_dir: Path,
    *,
    display_currency: Currency,
    base_currency: Currency,
    as_of: date,
    max_price_age_days: int | None = None,
) -> None:
    # Inputs
    portfolios = load_portfolios(data_dir / "portfolios.json")
    transactions = load_transactions(data_dir / "transactions.json")
    snapshot = load_rates(data_dir / "rates.json")
    cpi_path = data_dir / "cpi.json"
    cpi_index = CpiSeries.from_json(cpi_path) if cpi_path.exists() else None
    price_service = PriceHistoryService(store=JsonlPriceHistoryStore(root_dir=data_dir))
    histories = price_service.histories(txn.price_key for txn in transactions)

    # Ledger and valuation
    ledger = LotLedger(
        portfolios=portfolios,
        snapshot=snapshot,
        base_currency=base_currency,
        dust=config().dust_threshold,
    )
    ledger_result = ledger.process(transactions, as_of=as_of)
    tax_calculator = TaxCalculator(snapshot=snapshot, cpi_index=cpi_index, base_currency=base_currency)
    valuator = HoldingValuator(
        portfolios=portfolios,
        snapshot=snapshot,
        tax_calculator=tax_calculator,
        base_currency=base_currency,
    )
    holdings = valuator.value_all(ledger_result, histories=histories, as_of=as_of)

    # Performance
    engine = PerformanceEngine(
        snapshot=snapshot,
        display_currency=display_currency,
        portfolios=portfolios,
        max_price_age_days=max_price_age_days,
        material_value=config().material_value_threshold,
        dust=config().dust_threshold,
    )
    vested = [txn for txn in transactions if txn.is_vested(as_of)]
    points = engine.build_series(vested, histories)

    # Print summary
    print(f"Loaded {len(transactions)} transactions across {len(portfolios)} portfolios from {data_dir}")
    print_ledger_summary(ledger_result)
    summary = SummaryAggregator(snapshot=snapshot, display_currency=display_currency).summarize(holdings)
    render_holdings(holdings, summary.weights)
    render_dashboard_summary(summary)
    render_period_returns(points)


def print_ledger_summary(result: LedgerResult) -> None:
    open_lots = sum(len(state.open_lots) for state in result.holdings.values())
    pending = sum(len(state.pending) for state in result.holdings.values())
    print("Ledger summary:")
    print(f"  Holdings:       {len(result.holdings)}")
    print(f"  Open lots:      {open_lots}")
    print(f"  Sales:          {len(result.sales)}")
    print(f"  Unvested txns:  {pending}")


def render_period_returns(points: Sequence[PerformancePoint]) -> None:
    print("Time-weighted returns:")
    if not points:
        print("  (no price history)")
        return
    returns = calculate_period_returns(points)
    period_width = max(len(str(period)) for period in returns)
    for period, result in returns.items():
        print(f"  {str(period):<{period_width}} {format_percent(result.perf):>10} {format_currency(result.gain):>14}")


def main(argv: Sequence[str] | None = None) -> None:
    settings = config()
    parser = argparse.ArgumentParser(description="Value portfolios and compute time-weighted returns.")
    parser.add_argument("--data-dir", type=Path, default=settings.data_dir)
    parser.add_argument("--display-currency", default=str(settings.display_currency))
    parser.add_argument("--as-of", type=date.fromisoformat, default=date.today())
    parser.add_argument("--max-price-age-days", type=int, default=settings.max_price_age_days)
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    run(
        args.data_dir,
        display_currency=normalize_currency(args.display_currency),
        base_currency=settings.base_currency,
        as_of=args.as_of,
        max_price_age_days=args.max_price_age_days,
    )


if __name__ == "__main__":
    main()
