"""
Unit tests for the HTML structure hash.
"""

from hashtracks.pipeline.structure_hash import build_skeleton, generate_structure_hash


PAGE = """
<html><body>
<table class="future_hashes">
  <tr><td class="date">1/15/26</td><td class="trail"><a href="/r/1">Bridge Trail</a></td></tr>
  <tr><td class="date">1/22/26</td><td class="trail"><a href="/r/2">Park Trail</a></td></tr>
</table>
</body></html>
"""


def test_text_changes_keep_hash():
    changed = PAGE.replace("Bridge Trail", "Tunnel Trail").replace("/r/1", "/r/99")
    assert generate_structure_hash(changed, ["table.future_hashes"]) == generate_structure_hash(
        PAGE, ["table.future_hashes"]
    )


def test_cell_class_change_moves_hash():
    changed = PAGE.replace('class="trail"', 'class="event"')
    assert generate_structure_hash(changed, ["table.future_hashes"]) != generate_structure_hash(
        PAGE, ["table.future_hashes"]
    )


def test_child_tag_change_moves_hash():
    changed = PAGE.replace('<a href="/r/1">Bridge Trail</a>', "<span>Bridge Trail</span>")
    assert generate_structure_hash(changed, ["table.future_hashes"]) != generate_structure_hash(
        PAGE, ["table.future_hashes"]
    )


def test_missing_table_is_part_of_skeleton():
    assert build_skeleton(PAGE) == [
        "MISSING:table.past_hashes",
        "TABLE:table.future_hashes",
        "TR:TD[date]{}|TD[trail]{a}",
        "TR:TD[date]{}|TD[trail]{a}",
    ]


def test_only_first_rows_sampled():
    extra = PAGE.replace(
        "</table>",
        '<tr><td class="date">1/29/26</td></tr><tr><td><b>x</b></td></tr></table>',
    )
    three_rows = PAGE.replace(
        "</table>",
        '<tr><td class="date">1/29/26</td></tr></table>',
    )
    assert generate_structure_hash(extra, ["table.future_hashes"]) == generate_structure_hash(
        three_rows, ["table.future_hashes"]
    )


def test_hash_is_hex_sha256():
    value = generate_structure_hash(PAGE)
    assert len(value) == 64
    int(value, 16)
