# Overview: SHA-256 chaining shared by locked Z reports and credit notes.

from __future__ import annotations

import hashlib
import json


GENESIS_HASH = "0" * 64


def compute_report_hash(figures: dict, previous_hash: str) -> str:
    """SHA-256 over the canonical JSON of ``figures`` and the previous link."""
    canonical = json.dumps(
        {"figures": figures, "previous_hash": previous_hash},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_chain(rows, figures_of) -> dict:
    """
    Walk ``rows`` (ordered by sequence_number) and recompute every link.

    Returns {"checked", "valid", "broken_at", "reason"}; reason is one of
    sequence_gap, previous_hash_mismatch, hash_mismatch.
    """
    expected_previous = GENESIS_HASH
    for position, row in enumerate(rows, start=1):
        reason = None
        if row.sequence_number != position:
            reason = "sequence_gap"
        elif row.previous_hash != expected_previous:
            reason = "previous_hash_mismatch"
        elif compute_report_hash(figures_of(row), row.previous_hash) != row.hash:
            reason = "hash_mismatch"

        if reason:
            return {"checked": position, "valid": False, "broken_at": row.sequence_number, "reason": reason}
        expected_previous = row.hash

    return {"checked": len(rows), "valid": True, "broken_at": None, "reason": None}
