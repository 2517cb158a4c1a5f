"""
Source health alerts.

Key components:
- health: Compare a scrape against the rolling baseline and raise alerts
- context: Typed alert payloads stored in Alert.context
- service: AlertService for the lifecycle and the repair actions
- issues: Render alerts as tracker issues and file them on GitHub
- auto_issue: File issues for failing sources right after a scrape

Alert lifecycle: OPEN -> ACKNOWLEDGED -> RESOLVED, with SNOOZED as a
temporary state. RESOLVED is terminal; a new detection after resolution
opens a new alert.
"""
