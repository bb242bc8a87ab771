# app/core/normalizers.py

"""
Data normalization utilities for transactions.

Ensures consistent data format regardless of source: bank feeds,
gateway exports and invoicing systems all spell names, amounts and
dates differently.
"""

from datetime import date, datetime
from typing import Any
import re
import unicodedata


def normalize_amount(amount: Any) -> float | None:
    """
    Normalize amount to a float rounded to minor units.

    Handles:
    - Integers and floats
    - Strings with currency symbols
    - European formatting ("1.234,56")

    Returns None when the value is missing or unreadable.
    """
    if amount is None or isinstance(amount, bool):
        return None

    if isinstance(amount, (int, float)):
        return round(float(amount), 2)

    if isinstance(amount, str):
        cleaned = re.sub(r'[^\d.,-]', '', amount)
        if ',' in cleaned and '.' in cleaned:
            # Whichever separator comes last is the decimal one
            if cleaned.rfind(',') > cleaned.rfind('.'):
                cleaned = cleaned.replace('.', '').replace(',', '.')
            else:
                cleaned = cleaned.replace(',', '')
        elif ',' in cleaned:
            head, _, tail = cleaned.rpartition(',')
            cleaned = f"{head.replace(',', '')}.{tail}" if len(tail) <= 2 else cleaned.replace(',', '')
        try:
            return round(float(cleaned), 2)
        except ValueError:
            return None

    return None


def normalize_date(d: Any) -> date | None:
    """
    Normalize date to date object.

    Handles:
    - date objects
    - datetime objects
    - ISO strings
    - Unix timestamps
    """
    if d is None:
        return None

    # datetime is a subclass of date, check it first
    if isinstance(d, datetime):
        return d.date()

    if isinstance(d, date):
        return d

    if isinstance(d, (int, float)):
        # Unix timestamp
        try:
            return datetime.fromtimestamp(d).date()
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(d, str):
        d = d.strip()
        # Try ISO format first
        try:
            return datetime.fromisoformat(d.replace('Z', '+00:00')).date()
        except ValueError:
            pass

        # Try common formats
        formats = [
            '%Y-%m-%d',
            '%d/%m/%Y',
            '%m/%d/%Y',
            '%Y/%m/%d',
            '%d-%m-%Y',
        ]
        for fmt in formats:
            try:
                return datetime.strptime(d, fmt).date()
            except ValueError:
                continue

    return None


def strip_accents(s: str) -> str:
    """Remove diacritics ("Peña" -> "Pena")."""
    decomposed = unicodedata.normalize('NFD', s)
    return ''.join(c for c in decomposed if unicodedata.category(c) != 'Mn')


def normalize_string(s: str | None) -> str:
    """
    Normalize string for comparison.

    - Lowercase
    - Strip diacritics
    - Replace special characters with spaces
    - Collapse whitespace
    """
    if not s:
        return ""

    s = strip_accents(s.lower())
    s = re.sub(r'[^a-z0-9\s]', ' ', s)
    s = re.sub(r'\s+', ' ', s).strip()
    return s


def tokenize(s: str | None, min_length: int = 3) -> frozenset[str]:
    """Comparable token set; short tokens are dropped."""
    return frozenset(t for t in normalize_string(s).split() if len(t) >= min_length)


_NAME_SUFFIXES = [
    r'\s+inc\.?$',
    r'\s+llc\.?$',
    r'\s+corp\.?$',
    r'\s+corporation$',
    r'\s+ltd\.?$',
    r'\s+limited$',
    r'\s+co\.?$',
    r'\s+company$',
    r'\s+gmbh$',
    r'\s+s\.?\s?l\.?$',
    r'\s+s\.?\s?a\.?$',
    r'\s+s\.?l\.?u\.?$',
    r'\s+b\.?v\.?$',
]


def normalize_customer_name(name: str | None) -> str:
    """
    Normalize customer name for matching.

    Handles:
    - Common legal suffixes (Inc, LLC, S.L., GmbH, etc.)
    - Punctuation and diacritics
    - Case
    """
    if not name:
        return ""

    name = strip_accents(name.lower()).strip().rstrip(',.')

    # Suffixes can stack ("Acme Holdings Co. Ltd.")
    for _ in range(2):
        for suffix in _NAME_SUFFIXES:
            name = re.sub(suffix, '', name, flags=re.IGNORECASE).rstrip(' ,.')

    return normalize_string(name)


def normalize_email(email: str | None) -> str:
    """Lowercase and drop "+alias" tags from the local part."""
    if not email or '@' not in email:
        return ""

    local, _, domain = email.strip().lower().partition('@')
    local = local.split('+', 1)[0]
    return f"{local}@{domain}" if local and domain else ""


def compact_identifier(value: Any) -> str:
    """Alphanumerics only, lowercased ("INV-2025/001" -> "inv2025001")."""
    if value is None:
        return ""
    return re.sub(r'[^a-z0-9]', '', str(value).lower())


def identifier_segments(value: str | None, min_length: int = 4) -> list[str]:
    """Candidate identifiers embedded in free text, in order of appearance."""
    if not value:
        return []
    segments = []
    for raw in re.findall(r'[A-Za-z0-9][A-Za-z0-9\-/_.#]*[A-Za-z0-9]', value):
        for candidate in (raw, *re.split(r'[\-/_.#]', raw)):
            compact = compact_identifier(candidate)
            if len(compact) >= min_length and compact not in segments:
                segments.append(compact)
    return segments


def amount_bucket(amount: float) -> int:
    """Integer bucket used to tolerate sub-unit rounding."""
    return int(round(abs(amount)))


def bigram_similarity(a: str | None, b: str | None) -> float:
    """Dice coefficient over character bigrams of the normalized strings."""
    s1 = normalize_string(a).replace(' ', '')
    s2 = normalize_string(b).replace(' ', '')
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if len(s1) < 2 or len(s2) < 2:
        return 0.0

    bigrams: dict[str, int] = {}
    for i in range(len(s1) - 1):
        pair = s1[i:i + 2]
        bigrams[pair] = bigrams.get(pair, 0) + 1

    overlap = 0
    for i in range(len(s2) - 1):
        pair = s2[i:i + 2]
        if bigrams.get(pair, 0) > 0:
            bigrams[pair] -= 1
            overlap += 1

    return (2.0 * overlap) / (len(s1) + len(s2) - 2)


def extract_customer_info(metadata: dict | None) -> tuple[str | None, str | None]:
    """
    Extract customer name and email from gateway/invoice metadata.

    Returns (customer_name, customer_email)
    """
    if not metadata:
        return None, None

    customer_name = None
    customer_email = None

    # Common field names for customer name, most specific first
    name_fields = ['customer_name', 'customerName', 'company_name', 'billing_name', 'client_name', 'name']
    for field in name_fields:
        if metadata.get(field):
            customer_name = str(metadata[field])
            break

    email_fields = ['customer_email', 'customerEmail', 'email', 'billing_email']
    for field in email_fields:
        if metadata.get(field):
            customer_email = str(metadata[field])
            break

    return customer_name, customer_email


def pnl_line(category_code: str | None) -> str | None:
    """P&L line of a category code ("102.3" -> "102")."""
    if not category_code:
        return None
    return str(category_code).split('.', 1)[0]
