from __future__ import annotations

import logging
import re
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from models import IdCounter
from utils import ValidationError


log = logging.getLogger("registration")

REGISTRATIONS_COLLECTION = "registrations"
SEQUENCE_PAD = 3


def normalize_period(or_period: str) -> str:
    """'OR 21', 'or21' and '21' all name period 21."""
    s = str(or_period or "").strip()
    s = re.sub(r"^or", "", s, flags=re.IGNORECASE).strip()
    if not s or not re.fullmatch(r"[0-9A-Za-z]+", s):
        raise ValidationError(f"Invalid recruitment period: {or_period!r}")
    return s


def normalize_year(or_year: str) -> str:
    s = str(or_year or "").strip()
    if not re.fullmatch(r"\d{4}", s):
        raise ValidationError(f"Invalid recruitment year: {or_year!r}")
    return s


def format_registration_id(prefix: str, or_period: str, or_year: str, sequence: int) -> str:
    return f"{prefix}-OR{or_period}-{or_year}-{int(sequence):0{SEQUENCE_PAD}d}"


def parse_sequence(registration_id: str) -> Optional[int]:
    m = re.search(r"-(\d+)$", str(registration_id or "").strip())
    return int(m.group(1)) if m else None


def highest_existing_sequence(store, *, prefix: str, or_period: str, or_year: str) -> int:
    """Scan the period's registrations for the largest issued sequence (0 when none)."""
    pattern = re.compile(rf"^{re.escape(prefix)}-OR{re.escape(or_period)}-{re.escape(or_year)}-(\d+)$")
    docs = store.query_documents(
        REGISTRATIONS_COLLECTION,
        [("orPeriod", "==", or_period), ("orYear", "==", or_year)],
    )
    best = 0
    for d in docs:
        m = pattern.match(str(d.get("registrationId") or ""))
        if m:
            best = max(best, int(m.group(1)))
    return best


def _counter_key(prefix: str, or_period: str, or_year: str) -> str:
    return f"REGISTRATION:{prefix}:OR{or_period}:{or_year}"


def _take_next(store, key: str) -> Optional[int]:
    # increment first so the write lock is held before the value is read
    with store.transaction("next_sequence", "id_counters", key) as session:
        res = session.execute(
            update(IdCounter).where(IdCounter.key == key).values(nextValue=IdCounter.nextValue + 1)
        )
        if not res.rowcount:
            return None
        after = session.execute(select(IdCounter.nextValue).where(IdCounter.key == key)).scalar_one()
        return int(after) - 1


def _seed_counter(store, key: str, next_value: int) -> None:
    with store.transaction("seed_sequence", "id_counters", key) as session:
        try:
            with session.begin_nested():
                session.add(IdCounter(key=key, nextValue=int(next_value)))
                session.flush()
        except IntegrityError:
            # another request seeded it first
            log.info("sequence counter already seeded key=%s", key)


def next_registration_id(store, *, or_period: str, or_year: str, prefix: str = "CAANG") -> str:
    """
    Allocate the next human-facing registration id for a recruitment period.

    The counter row is incremented and read back in one transaction, so two
    concurrent registrations never receive the same sequence. A missing counter is seeded
    once from the highest sequence already present in the period.
    """
    period = normalize_period(or_period)
    year = normalize_year(or_year)
    prefix_u = str(prefix or "CAANG").strip().upper()
    key = _counter_key(prefix_u, period, year)

    value = _take_next(store, key)
    if value is None:
        seed = highest_existing_sequence(store, prefix=prefix_u, or_period=period, or_year=year)
        _seed_counter(store, key, seed + 1)
        value = _take_next(store, key)
        if value is None:
            raise RuntimeError(f"Sequence counter missing after seeding: {key}")

    reg_id = format_registration_id(prefix_u, period, year, value)
    log.info("allocated registration id=%s", reg_id)
    return reg_id
