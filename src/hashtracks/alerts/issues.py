"""
Export alerts to the GitHub issue tracker.

Filing an issue is best effort: a missing token, a network error or a
non-2xx response raises IssueTrackerError, which the alert service
records in the repair log without touching the alert's status.

Issue bodies are rendered per alert type from the typed context payload
(see alerts/context.py).
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import requests

from hashtracks.alerts import constants as c
from hashtracks.alerts.context import (
    EventCountContext,
    FailureContext,
    FieldFillContext,
    StructureChangeContext,
    TagListContext,
    parse_context,
)
from hashtracks.config import settings
from hashtracks.db.models import Alert, Source

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"


class IssueTrackerError(RuntimeError):
    """The issue could not be filed."""
    pass


@dataclass
class IssueDraft:
    title: str
    body: str
    labels: list[str] = field(default_factory=list)


@dataclass
class FiledIssue:
    number: int
    url: str


# Modules worth reading first for each alert type
RELEVANT_FILES = {
    c.UNMATCHED_TAGS: ["src/hashtracks/kennels/resolver.py"],
    c.SOURCE_KENNEL_MISMATCH: ["src/hashtracks/pipeline/merge.py", "src/hashtracks/kennels/resolver.py"],
    c.STRUCTURE_CHANGE: ["src/hashtracks/pipeline/structure_hash.py"],
    c.FIELD_FILL_DROP: ["src/hashtracks/pipeline/fill_rates.py"],
    c.EVENT_COUNT_ANOMALY: ["src/hashtracks/pipeline/scrape.py", "src/hashtracks/pipeline/merge.py"],
    c.SCRAPE_FAILURE: ["src/hashtracks/pipeline/scrape.py"],
    c.CONSECUTIVE_FAILURES: ["src/hashtracks/pipeline/scrape.py"],
}

SUGGESTED_APPROACH = {
    c.UNMATCHED_TAGS: (
        "Add aliases mapping these tags to existing kennels, or create new kennels "
        "if these are genuinely new organizations."
    ),
    c.SOURCE_KENNEL_MISMATCH: (
        "Link the kennel to this source if the source legitimately lists its runs, "
        "or fix the source config so it produces the correct tag."
    ),
    c.STRUCTURE_CHANGE: (
        "Fetch the current page and compare its HTML structure to the expected format. "
        "Update selectors and extraction patterns in the adapter."
    ),
    c.FIELD_FILL_DROP: (
        "Examine sample raw events to find which extraction patterns stopped matching."
    ),
    c.EVENT_COUNT_ANOMALY: (
        "Check that the source is reachable, the scrape window is appropriate and the "
        "page structure has not changed."
    ),
    c.SCRAPE_FAILURE: "Check source URL accessibility and review the error messages.",
    c.CONSECUTIVE_FAILURES: "Check source URL accessibility and review the error messages.",
}


def _bullet_tags(tags: list[str]) -> str:
    return "\n".join(f"- `{t}`" for t in tags)


def render_context_section(alert_type: str, raw_context: Optional[dict]) -> str:
    """Markdown section describing an alert's context payload."""
    context = parse_context(raw_context)
    if context is None:
        return ""

    if isinstance(context, TagListContext):
        if alert_type == c.SOURCE_KENNEL_MISMATCH:
            return (
                f"### Blocked Tags\n{_bullet_tags(context.tags)}\n\n"
                "These tags resolved to valid kennels but those kennels are not linked to this source."
            )
        return (
            f"### Unmatched Tags\n{_bullet_tags(context.tags)}\n\n"
            "These tags appeared in scraped events but couldn't be resolved to any kennel.\n"
            "The resolver checked: short name -> alias -> source patterns -> no match."
        )

    if isinstance(context, EventCountContext):
        return (
            f"### Event Count\n"
            f"- **Baseline avg:** {context.baseline_avg} (last {context.baseline_window} scrapes)\n"
            f"- **Current:** {context.current_count}\n"
            f"- **Drop:** {context.drop_percent}%"
        )

    if isinstance(context, FieldFillContext):
        return (
            f"### Field Quality\n"
            f"- **Field:** {context.field}\n"
            f"- **Baseline:** {context.baseline_avg}%\n"
            f"- **Current:** {context.current_rate}%\n"
            f"- **Drop:** {context.baseline_avg - context.current_rate}pp"
        )

    if isinstance(context, StructureChangeContext):
        return (
            f"### Structure Change\n"
            f"- **Previous hash:** `{context.previous_hash[:16]}...`\n"
            f"- **Current hash:** `{context.current_hash[:16]}...`\n\n"
            "The HTML tag hierarchy changed between scrapes, which may break field extraction."
        )

    if isinstance(context, FailureContext):
        errors = "\n".join(f"- {e}" for e in context.error_messages[:5])
        return f"### Errors\n{errors}\n\n**Consecutive failures:** {context.consecutive_count}"

    return ""


def render_issue(alert: Alert, source: Source) -> IssueDraft:
    """Build the issue title, markdown body and labels for an alert."""
    type_name = alert.type.replace("_", " ").lower()
    files = RELEVANT_FILES.get(alert.type, [])

    body = "\n".join([
        f"## Source Alert: {type_name}",
        "",
        f"**Source:** {source.name} ({source.type})",
        f"**URL:** {source.url}",
        f"**Severity:** {alert.severity}",
        f"**Alert ID:** {alert.id}",
        "",
        render_context_section(alert.type, alert.context),
        "",
        "### Relevant Files",
        "\n".join(f"- `{f}`" for f in files),
        "",
        "### Suggested Approach",
        SUGGESTED_APPROACH.get(alert.type, "Investigate the alert context and relevant files."),
        "",
        "---",
        "*Created from a HashTracks source alert*",
    ])

    return IssueDraft(
        title=f"[Alert] {alert.title} ({source.name})",
        body=body,
        labels=[
            "alert",
            f"alert:{alert.type.lower().replace('_', '-')}",
            f"severity:{alert.severity.lower()}",
        ],
    )


class GitHubIssueClient:
    """
    Minimal GitHub REST client for filing issues.

    Usage:
        client = GitHubIssueClient()
        issue = client.create_issue(draft)
        print(issue.url)
    """

    def __init__(
        self,
        token: Optional[str] = None,
        repository: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.token = token if token is not None else settings.github_token
        self.repository = repository or settings.github_repository
        self.timeout = timeout or settings.github_api_timeout
        self._session = session

    def _get_session(self) -> requests.Session:
        """Get or create HTTP session."""
        if self._session is None:
            self._session = requests.Session()
        self._session.headers.update({
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.token}",
        })
        return self._session

    def create_issue(self, draft: IssueDraft) -> FiledIssue:
        """
        File an issue.

        Raises:
            IssueTrackerError: no token configured, request failed, or
                GitHub answered with an error status
        """
        if not self.token:
            raise IssueTrackerError("GITHUB_TOKEN not configured")

        url = f"{GITHUB_API_URL}/repos/{self.repository}/issues"
        try:
            response = self._get_session().post(
                url,
                json={"title": draft.title, "body": draft.body, "labels": draft.labels},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise IssueTrackerError(f"Failed to create issue: {e}") from e

        if not response.ok:
            raise IssueTrackerError(f"GitHub API {response.status_code}: {response.text[:200]}")

        payload = response.json()
        issue = FiledIssue(number=payload["number"], url=payload["html_url"])
        logger.info("Filed issue #%d in %s", issue.number, self.repository)
        return issue
