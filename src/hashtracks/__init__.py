"""
HashTracks - Hash Run Event Aggregation Core

Collects scheduled hash runs from many external sources, resolves each
source's kennel tags to canonical kennels, and keeps a durable event store
with per-source health monitoring.

Main components:
- kennels: Fuzzy matching, tag resolution, kennel creation and merging
- pipeline: Adapter contract, raw event merge and scrape orchestration
- alerts: Source health analysis, alert lifecycle and repair actions
- roster: Attendance spreadsheet import
"""

__version__ = "0.1.0"
