from __future__ import annotations

import re
from collections.abc import Iterable

_CUSTOMER_PATTERNS = (
    re.compile(r"^C-(\d+)$"),
    re.compile(r"AE-C-(\d+)"),
)
_SUPPLIER_PATTERNS = (
    re.compile(r"^S(\d+)$"),
    re.compile(r"AE-S-(\d+)"),
    re.compile(r"^S-(\d+)$"),
)
SUPPLIER_SEQUENCE_FLOOR = 1000


def _highest_sequence(numbers: Iterable[str | None], patterns: tuple[re.Pattern[str], ...]) -> int:
    highest = 0
    for number in numbers:
        if not number:
            continue
        for pattern in patterns:
            match = pattern.search(number.strip())
            if match:
                highest = max(highest, int(match.group(1)))
                break
    return highest


def next_customer_number(existing: Iterable[str | None]) -> str:
    """C-0001 style; also understands the legacy AE-C-001 numbers."""
    return f"C-{_highest_sequence(existing, _CUSTOMER_PATTERNS) + 1:04d}"


def next_supplier_number(existing: Iterable[str | None]) -> str:
    """S1001 style, no dash and no padding; legacy AE-S-001 and S-0001 count too."""
    highest = max(_highest_sequence(existing, _SUPPLIER_PATTERNS), SUPPLIER_SEQUENCE_FLOOR)
    return f"S{highest + 1}"
