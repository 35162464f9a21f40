"""Fiscal-year date helpers. The default fiscal year runs April 1 - March 31."""
from datetime import date, timedelta
from typing import Tuple


def fiscal_year_start_year(d: date, start_month: int = 4) -> int:
    return d.year if d.month >= start_month else d.year - 1


def fiscal_year_boundaries(d: date, start_month: int = 4) -> Tuple[date, date]:
    """Return the first and last day of the fiscal year containing ``d``."""
    start_year = fiscal_year_start_year(d, start_month)
    start = date(start_year, start_month, 1)
    end = date(start_year + 1, start_month, 1) - timedelta(days=1)
    return start, end


def fiscal_year_label(d: date, start_month: int = 4) -> str:
    """``FY2025/26`` for any date between 2025-04-01 and 2026-03-31."""
    start_year = fiscal_year_start_year(d, start_month)
    if start_month == 1:
        return f"FY{start_year}"
    return f"FY{start_year}/{(start_year + 1) % 100:02d}"


def is_fiscal_year_start(d: date, start_month: int = 4) -> bool:
    return d.month == start_month and d.day == 1


def days_until_next_fiscal_year(d: date, start_month: int = 4) -> int:
    _, end = fiscal_year_boundaries(d, start_month)
    return (end - d).days + 1
