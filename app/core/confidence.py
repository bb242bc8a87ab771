# app/core/confidence.py

"""
Amount/date tolerance checks and candidate ranking.

Every strategy ranks its acceptable candidates with the same combined
score: abs(date difference in days) + amount percent difference * 100.
Lower is better; ties fall back to the target id so results never depend
on input order.
"""

from datetime import date, timedelta


# ============================================
# Amount comparison
# ============================================

def amount_percent_diff(amount: float, target_amount: float) -> float:
    """Relative difference as a fraction of the target amount."""
    a = abs(amount)
    t = abs(target_amount)
    if t == 0:
        return 0.0 if a == 0 else 1.0
    return abs(a - t) / t


def amounts_equal(amount: float, target_amount: float, tolerance: float = 0.01) -> bool:
    return abs(abs(amount) - abs(target_amount)) <= tolerance + 1e-9


def within_percent(amount: float, target_amount: float, percent: float) -> bool:
    return amount_percent_diff(amount, target_amount) <= percent / 100 + 1e-9


# ============================================
# Date comparison
# ============================================

def day_distance(a: date, b: date) -> int:
    return abs((a - b).days)


def business_day_distance(a: date, b: date) -> int:
    """Weekdays strictly after the earlier date up to the later one."""
    start, end = (a, b) if a <= b else (b, a)
    days = 0
    current = start
    while current < end:
        current += timedelta(days=1)
        if current.weekday() < 5:
            days += 1
    return days


def rail_day_distance(a: date, b: date, business_days: bool) -> int:
    return business_day_distance(a, b) if business_days else day_distance(a, b)


# ============================================
# Ranking
# ============================================

def tie_break_score(date_diff_days: int, pct_diff: float) -> float:
    return abs(date_diff_days) + pct_diff * 100


def window_confidence(base: float, days: int, floor: float, step: float = 0.02) -> float:
    """Confidence that decays with distance from the expected date."""
    return round(max(floor, base - step * days), 4)


def scaled_confidence(ceiling: float, similarity: float) -> float:
    return round(ceiling * min(1.0, max(0.0, similarity)), 4)
