"""
Report Generator for the Phase Rotation Backtester

Generates reports in multiple formats:
    - JSON: Machine-readable result, same shape as the API response
    - Markdown: Summary plus yearly and monthly tables
    - Parquet: Daily / monthly / yearly snapshot tables
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from .backtest_engine import BacktestResult, DailySnapshot
from .config import OUTPUT

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def results_to_frame(snapshots: List[DailySnapshot]) -> pd.DataFrame:
    """Snapshot list as a DataFrame indexed by date."""
    if not snapshots:
        return pd.DataFrame()
    df = pd.DataFrame([s.to_dict() for s in snapshots])
    df["date"] = pd.to_datetime(df["date"])
    return df.set_index("date")


# =============================================================================
# JSON REPORT
# =============================================================================

def generate_json_report(result: BacktestResult, output_path: Path) -> None:
    """Generate JSON report for programmatic consumption."""
    report = result.to_dict()
    report["metadata"] = {
        "generated_at": datetime.now().isoformat(),
        "report_version": VERSION,
        "engine_version": result.version,
        "processing_time_ms": result.processing_time_ms,
    }
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, ensure_ascii=False, default=str)


# =============================================================================
# MARKDOWN REPORT
# =============================================================================

def _snapshot_table(snapshots: List[DailySnapshot]) -> str:
    md = "| Date | Phase | Stock1 Value | Stock2 Value | Cash | Total | Return |\n"
    md += "|------|-------|-------------:|-------------:|-----:|------:|-------:|\n"
    for s in snapshots:
        md += (
            f"| {s.date} | {s.phase_label} ({s.phase.value}) | {s.stock1_value:,.2f} | "
            f"{s.stock2_value:,.2f} | {s.cash:,.2f} | {s.total_value:,.2f} | {s.return_rate:+.2f}% |\n"
        )
    return md


def generate_markdown_report(result: BacktestResult, output_path: Path) -> None:
    """Generate Markdown report with summary, yearly and monthly tables."""
    s = result.summary
    md = f"""# Phase Rotation Backtest: {result.stock1_ticker} / {result.stock2_ticker}

*Reference: {result.reference_ticker} | Generated {datetime.now().strftime('%Y-%m-%d %H:%M')}*

## Summary

| Metric | Value |
|--------|-------|
| Period | {result.start_date} to {result.end_date} |
| Simulated Days | {result.trading_days:,} |
| Initial Cash | {result.initial_cash:,.2f} |
| Final Value | {s.final_value:,.2f} |
| Total Return | {s.total_return:+.2f}% |
| Profit | {s.profit:+,.2f} |
| {result.stock1_ticker} Price Return | {s.stock1_price_return:+.2f}% |

## Yearly Results

{_snapshot_table(result.yearly)}
## Monthly Results

{_snapshot_table(result.monthly)}"""

    with open(output_path, "w", encoding="utf-8") as f:
        f.write(md)


# =============================================================================
# ALL REPORTS
# =============================================================================

def generate_all_reports(result: BacktestResult, output_dir: Path) -> Dict[str, Optional[Path]]:
    """Generate every enabled report format; failures are logged, not raised."""
    output_dir = Path(output_dir)
    reports_dir = output_dir / "reports"
    reports_dir.mkdir(parents=True, exist_ok=True)

    stem = f"{result.stock1_ticker}_{result.stock2_ticker}".lower()
    outputs: Dict[str, Optional[Path]] = {}

    if OUTPUT.json_enabled:
        json_path = reports_dir / f"{stem}_backtest.json"
        try:
            generate_json_report(result, json_path)
            outputs["json"] = json_path
        except Exception as e:
            logger.error(f"JSON failed: {e}")
            outputs["json"] = None

    if OUTPUT.markdown_enabled:
        md_path = reports_dir / f"{stem}_backtest.md"
        try:
            generate_markdown_report(result, md_path)
            outputs["md"] = md_path
        except Exception as e:
            logger.error(f"Markdown failed: {e}")
            outputs["md"] = None

    if OUTPUT.parquet_enabled:
        for name, snapshots in (
            ("daily", result.daily),
            ("monthly", result.monthly),
            ("yearly", result.yearly),
        ):
            path = output_dir / f"{stem}_{name}.parquet"
            try:
                results_to_frame(snapshots).to_parquet(path, compression="snappy")
                outputs[name] = path
            except Exception as e:
                logger.error(f"Parquet ({name}) failed: {e}")
                outputs[name] = None

    return outputs
