"""Identity-based deduplication of aggregate records.

The source's native cursor cannot tell us which hourly statistics were
already delivered: a statistic for an hour changes identity only when its
bucket changes, and late writers keep adding samples to old hours.  Each
aggregate therefore gets a content-addressed identity derived from
(metric, bucket start, bucket end), and the set of identities already sent is
stored per series in its SyncAnchor.

Identity:
    sha256("<metric>|<start UTC ISO-8601>|<end UTC ISO-8601>")
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass, field
from typing import Iterable

from src.healthsync.base import AggregateRecord, to_utc

logger = logging.getLogger("healthsync.sync.dedup")


def record_identity(record: AggregateRecord) -> str:
    """Compute the deterministic identity of an aggregate record.

    Two independent computations of the same bucket yield the same identity,
    regardless of the value or of the timezone the bounds are expressed in.

    Returns:
        SHA-256 hex digest.
    """
    canonical = "|".join(
        (
            record.metric.value,
            to_utc(record.start).isoformat(),
            to_utc(record.end).isoformat(),
        )
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


def is_valid_record(record: AggregateRecord) -> bool:
    """Return False for empty or zero aggregation outputs and inverted buckets."""
    if record.value is None:
        return False
    if math.isnan(record.value) or record.value == 0:
        return False
    return record.end >= record.start


@dataclass
class DedupResult:
    """Outcome of a dedup pass.

    Attributes:
        to_emit: Records not delivered before.  Order is unspecified.
        id_set:  Existing identities plus every identity seen in this pass.
        dropped: Number of records rejected by the validity check.
    """

    to_emit: list[AggregateRecord] = field(default_factory=list)
    id_set: set[str] = field(default_factory=set)
    dropped: int = 0


def seed_identities(records: Iterable[AggregateRecord]) -> set[str]:
    """Compute the identity set of a batch without emitting anything.

    Used by the one-time legacy backfill.
    """
    return {record_identity(r) for r in records if is_valid_record(r)}


def deduplicate(
    records: Iterable[AggregateRecord], existing_ids: Iterable[str] | None
) -> DedupResult:
    """Diff freshly computed records against previously emitted identities.

    Args:
        records:      Aggregates computed for the current window.
        existing_ids: Identities stored for the series (None = none yet).

    Returns:
        DedupResult.  Re-running with ``result.id_set`` emits nothing.
    """
    existing = set(existing_ids or ())
    result = DedupResult(id_set=set(existing))

    for record in records:
        if not is_valid_record(record):
            result.dropped += 1
            continue
        identity = record_identity(record)
        if identity not in result.id_set:
            result.to_emit.append(record)
        result.id_set.add(identity)

    logger.debug(
        "Dedup: %d to emit, %d dropped, id set %d → %d",
        len(result.to_emit),
        result.dropped,
        len(existing),
        len(result.id_set),
    )
    return result
