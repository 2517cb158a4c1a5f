"""Deterministic fingerprints for raw adapter records."""

import hashlib

from hashtracks.pipeline.adapters import RawEventData


def generate_fingerprint(data: RawEventData) -> str:
    """
    SHA-256 over every field of a raw event, joined with '|'.

    Two records with the same fingerprint are identical as far as the
    merge pipeline is concerned, so an already processed fingerprint
    can be skipped on the next scrape.
    """
    parts = [
        data.date,
        data.kennel_tag,
        str(data.run_number) if data.run_number is not None else "",
        data.title or "",
        data.location or "",
        data.location_url or "",
        data.hares or "",
        data.description or "",
        data.start_time or "",
        data.source_url or "",
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
