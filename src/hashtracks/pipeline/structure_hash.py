"""
Structural fingerprint of an HTML page.

HTML adapters depend on the page template (table classes, cell layout).
When a site is redesigned the adapter may keep "working" but return
garbage, so each HTML scrape stores a hash of the page skeleton and the
health checks raise STRUCTURE_CHANGE when it moves.

The skeleton keeps:
- Which of the watched tables exist
- The first few rows of each table
- Cell class names and the tag names of each cell's children

Text content and attribute values other than class are ignored, so
the hash is stable across normal content updates.
"""

import hashlib
from typing import Iterable

from bs4 import BeautifulSoup


# Tables watched when an adapter doesn't name its own
DEFAULT_TABLE_SELECTORS = ("table.past_hashes", "table.future_hashes")

# Rows sampled per table; content varies but layout should not
SAMPLE_ROWS = 3


def build_skeleton(html: str, table_selectors: Iterable[str] = DEFAULT_TABLE_SELECTORS) -> list[str]:
    """
    Reduce an HTML page to its structural skeleton lines.

    Args:
        html: Raw page HTML
        table_selectors: CSS selectors of the tables the adapter reads

    Returns:
        One line per table marker and per sampled row
    """
    soup = BeautifulSoup(html, "lxml")
    skeleton = []

    for selector in table_selectors:
        table = soup.select_one(selector)
        if table is None:
            skeleton.append(f"MISSING:{selector}")
            continue

        skeleton.append(f"TABLE:{selector}")
        for row in table.find_all("tr")[:SAMPLE_ROWS]:
            cells = []
            for cell in row.find_all("td"):
                classes = " ".join(cell.get("class") or [])
                child_tags = ",".join(child.name for child in cell.find_all(recursive=False))
                cells.append(f"TD[{classes}]{{{child_tags}}}")
            skeleton.append("TR:" + "|".join(cells))

    return skeleton


def generate_structure_hash(html: str, table_selectors: Iterable[str] = DEFAULT_TABLE_SELECTORS) -> str:
    """SHA-256 of the page skeleton (see build_skeleton)."""
    skeleton = build_skeleton(html, table_selectors)
    return hashlib.sha256("\n".join(skeleton).encode("utf-8")).hexdigest()
