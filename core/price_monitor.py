"""
recipe-ops Core: Price Consistency Monitor

Compares live price feed state against a static reference list.

For every FeedRecord the live feed address is resolved through the feed
registry and the latest round is read twice: once through the registry and
once directly from the feed contract. Problems are reported as Discrepancy
records, never raised, and nothing is corrected. A read that fails is reported
as READ_FAILED for that record and the remaining records are still checked.
"""

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from core.exceptions import ConfigError, RecipeOpsError
from core.interfaces import FeedReader, FeedRegistry

logger = logging.getLogger(__name__)

_ZERO_ADDRESS = "0x" + "0" * 40


class DiscrepancyKind(Enum):
    ADDRESS_DRIFT = "address_drift"
    STALE = "stale"
    PRICE_MISMATCH = "price_mismatch"
    READ_FAILED = "read_failed"


@dataclass(frozen=True)
class FeedRecord:
    name: str
    base: str
    quote: str
    expected_feed_address: str
    last_known_timestamp: Optional[int] = None


@dataclass(frozen=True)
class Discrepancy:
    kind: DiscrepancyKind
    record: FeedRecord
    details: Dict[str, Any] = field(default_factory=dict)


def load_feed_records(path: Union[str, Path]) -> List[FeedRecord]:
    """Load a static feed list (JSON array of {name, base, quote, feedAddress})."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot load feed list {path}: {e}") from e
    if not isinstance(raw, list):
        raise ConfigError(f"Feed list {path} must be a JSON array")

    records = []
    for idx, item in enumerate(raw):
        try:
            records.append(FeedRecord(
                name=item.get("name") or f"{item['base']}/{item['quote']}",
                base=item["base"],
                quote=item["quote"],
                expected_feed_address=item["feedAddress"],
                last_known_timestamp=item.get("lastUpdated"),
            ))
        except (KeyError, AttributeError) as e:
            raise ConfigError(f"Feed entry {idx} in {path} is missing {e}") from e
    logger.info(f"Loaded {len(records)} feed records from {path}")
    return records


class PriceConsistencyMonitor:
    """Pull-based feed checker for dashboards and alerts."""

    def __init__(self, registry: FeedRegistry, reader: FeedReader,
                 max_age: timedelta = timedelta(hours=24), tolerance_bps: int = 0,
                 clock: Callable[[], float] = time.time):
        self.registry = registry
        self.reader = reader
        self.max_age_seconds = int(max_age.total_seconds())
        self.tolerance_bps = tolerance_bps
        self._clock = clock

    def check(self, records: Sequence[FeedRecord]) -> Iterator[Discrepancy]:
        """Lazily yield discrepancies in input order. Each call starts a fresh pass."""
        for record in records:
            yield from self.check_record(record)

    def check_all(self, records: Sequence[FeedRecord], max_workers: int = 8) -> List[Discrepancy]:
        """Check records in parallel; results keep input order."""
        if not records:
            return []
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            per_record = list(pool.map(self.check_record, records))
        return [d for found in per_record for d in found]

    def check_record(self, record: FeedRecord) -> List[Discrepancy]:
        found: List[Discrepancy] = []
        try:
            self._check_into(record, found)
        except RecipeOpsError as e:
            logger.error(f"Feed {record.name}: read failed: {e}")
            found.append(Discrepancy(DiscrepancyKind.READ_FAILED, record, {
                "error": type(e).__name__,
                "message": str(e),
            }))
        return found

    def _check_into(self, record: FeedRecord, found: List[Discrepancy]) -> None:
        live_address = self.registry.get_feed(record.base, record.quote)

        if not live_address or live_address.lower() == _ZERO_ADDRESS:
            logger.warning(f"Feed {record.name}: registry has no live feed")
            found.append(Discrepancy(DiscrepancyKind.ADDRESS_DRIFT, record,
                                     {"expected": record.expected_feed_address, "live": None}))
            return

        if live_address.lower() != record.expected_feed_address.lower():
            logger.warning(
                f"Feed {record.name}: live address {live_address} != expected {record.expected_feed_address}"
            )
            found.append(Discrepancy(DiscrepancyKind.ADDRESS_DRIFT, record,
                                     {"expected": record.expected_feed_address, "live": live_address}))

        direct = self.reader.latest_round_data(live_address)
        age = int(self._clock()) - direct.updated_at
        if age > self.max_age_seconds:
            logger.warning(f"Feed {record.name} has not updated in {age / 3600:.1f}h")
            found.append(Discrepancy(DiscrepancyKind.STALE, record, {
                "updated_at": direct.updated_at,
                "age_seconds": age,
                "max_age_seconds": self.max_age_seconds,
                "last_known_timestamp": record.last_known_timestamp,
            }))

        via_registry = self.registry.latest_round_data(record.base, record.quote)
        if self._prices_differ(via_registry.answer, direct.answer):
            logger.warning(
                f"Feed {record.name}: registry answer {via_registry.answer} != direct answer {direct.answer}"
            )
            found.append(Discrepancy(DiscrepancyKind.PRICE_MISMATCH, record, {
                "registry_answer": via_registry.answer,
                "direct_answer": direct.answer,
                "registry_round": via_registry.round_id,
                "direct_round": direct.round_id,
                "tolerance_bps": self.tolerance_bps,
            }))

    def _prices_differ(self, a: int, b: int) -> bool:
        if a == b:
            return False
        reference = max(abs(a), abs(b))
        # |a - b| / reference > tolerance, in integer bps
        return abs(a - b) * 10_000 > self.tolerance_bps * reference
