"""
Scrape and merge pipeline.

Turns adapter output into canonical events:
- adapters: SourceAdapter interface and the type/URL registry
- merge: Fingerprint dedup, tag resolution, source-kennel guard, trust-aware upsert
- reconcile: Cancel events that disappeared from their source
- fill_rates / structure_hash: Per-run quality signals for the health checks
- scrape: One full run for one source, bracketed by a ScrapeLog

Import the submodules directly; scrape depends on hashtracks.alerts,
which in turn depends on this package.
"""
