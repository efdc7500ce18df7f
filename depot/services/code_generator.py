"""
Identifier generator for depot records.

Formats:
  - Containers:             CTR-{YYYYMMDD}-{SEQ:04d}         (CTR-20260315-0007)
  - Transactions:           {CONTAINER_NUMBER}-{YYMMDDHHMMSS} (MSKU1234567-260315093000)
      used as-is for surveys, EORs and repair orders, and prefixed with
      WO- (washing), SHT- (shunting), STK- (stacking), PI- (pre-inspection)
  - Chats / messages:       chat_{hex}, msg_{hex}
  - Washing certificates:   CLN-{YEAR}-{SEQ:06d}             (CLN-2026-000042)

Sequences are derived from the records currently visible to the caller, so
ids stay unique per collection; a clash on add still surfaces as
DuplicateKeyError from the store.
"""

import re
import uuid
from datetime import UTC, datetime

_CONTAINER_RE = re.compile(r"^CTR-(\d{8})-(\d{4})$")
_CERT_RE = re.compile(r"^CLN-(\d{4})-(\d{6})$")


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(UTC)


def generate_container_id(existing_ids, now: datetime | None = None) -> str:
    """Next CTR-YYYYMMDD-NNNN for today, given the ids already in use."""
    day = _now(now).strftime("%Y%m%d")
    seq = 0
    for entity_id in existing_ids:
        m = _CONTAINER_RE.match(entity_id or "")
        if m and m.group(1) == day:
            seq = max(seq, int(m.group(2)))
    return f"CTR-{day}-{seq + 1:04d}"


def generate_transaction_id(container_number: str, now: datetime | None = None,
                            prefix: str | None = None, existing_ids=()) -> str:
    """``{CONTAINER_NUMBER}-{YYMMDDHHMMSS}``, optionally prefixed; suffixed -2, -3 … on clash."""
    base = f"{(container_number or 'UNKNOWN').upper()}-{_now(now).strftime('%y%m%d%H%M%S')}"
    if prefix:
        base = f"{prefix}-{base}"
    taken = set(existing_ids)
    candidate, n = base, 1
    while candidate in taken:
        n += 1
        candidate = f"{base}-{n}"
    return candidate


def generate_certificate_number(existing_numbers, now: datetime | None = None) -> str:
    """Next CLN-YEAR-NNNNNN for the current year."""
    year = _now(now).strftime("%Y")
    seq = 0
    for number in existing_numbers:
        m = _CERT_RE.match(number or "")
        if m and m.group(1) == year:
            seq = max(seq, int(m.group(2)))
    return f"CLN-{year}-{seq + 1:06d}"


def generate_chat_id() -> str:
    return f"chat_{uuid.uuid4().hex[:16]}"


def generate_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:16]}"
