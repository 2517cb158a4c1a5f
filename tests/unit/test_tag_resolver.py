"""
Unit tests for kennel tag resolution.
"""

from hashtracks.db.models import KennelAlias
from hashtracks.kennels.resolver import TagResolver, load_source_patterns
from hashtracks.kennels.service import KennelService


class TestResolveOrder:
    """Exact name, then alias, then source patterns."""

    def test_exact_short_name_case_insensitive(self, db_session, make_kennel):
        kennel = make_kennel("NYCH3")
        result = TagResolver(db_session).resolve("nych3")
        assert result.matched
        assert result.kennel_id == kennel.id
        assert result.match_type == "exact"

    def test_every_alias_resolves(self, db_session, make_kennel):
        kennel = make_kennel("BrH3", aliases=("Brooklyn", "Brooklyn H3", "BH3"))
        resolver = TagResolver(db_session)
        for alias in ("brooklyn", "BROOKLYN H3", "bh3"):
            result = resolver.resolve(alias)
            assert result.kennel_id == kennel.id
            assert result.match_type == "alias"

    def test_unregistered_tag_is_unmatched(self, db_session, make_kennel):
        make_kennel("NYCH3")
        result = TagResolver(db_session).resolve("Philly H3")
        assert not result.matched
        assert result.kennel_id is None

    def test_blank_tag(self, db_session):
        assert not TagResolver(db_session).resolve("   ").matched

    def test_source_linked_kennel_wins_duplicate_short_name(self, db_session, make_kennel, make_source):
        make_kennel("City H3", region="Boston", kennel_code="city-h3-bos", slug="city-h3-bos")
        chicago = make_kennel("City H3", region="Chicago", kennel_code="city-h3-chi", slug="city-h3-chi")
        source = make_source(kennels=(chicago,))

        result = TagResolver(db_session).resolve("City H3", source_id=source.id)
        assert result.kennel_id == chicago.id


class TestSourcePatterns:
    """Per-source regex mapping and default tag."""

    def test_pattern_maps_to_kennel(self, db_session, make_kennel, make_source):
        kennel = make_kennel("QBK")
        source = make_source(config={"kennel_patterns": [["black knights", "QBK"]]})

        result = TagResolver(db_session).resolve("Queens Black Knights Run", source_id=source.id)
        assert result.kennel_id == kennel.id
        assert result.match_type == "pattern"

    def test_first_matching_pattern_decides(self, db_session, make_kennel, make_source):
        make_kennel("QBK")
        source = make_source(config={
            "kennel_patterns": [["knights", "Missing Kennel"], ["black", "QBK"]],
        })
        result = TagResolver(db_session).resolve("Black Knights", source_id=source.id)
        assert not result.matched

    def test_default_tag_fallback(self, db_session, make_kennel, make_source):
        kennel = make_kennel("Summit")
        source = make_source(config={"default_kennel_tag": "Summit"})

        result = TagResolver(db_session).resolve("Full Moon Special", source_id=source.id)
        assert result.kennel_id == kennel.id
        assert result.match_type == "default"

    def test_patterns_ignored_without_source(self, db_session, make_kennel, make_source):
        make_kennel("Summit")
        make_source(config={"default_kennel_tag": "Summit"})
        assert not TagResolver(db_session).resolve("Full Moon Special").matched

    def test_invalid_pattern_is_skipped(self):
        patterns = load_source_patterns({"kennel_patterns": [["(unclosed", "A"], ["ok", "B"], "junk"]})
        assert [tag for _, tag in patterns.patterns] == ["B"]


class TestCache:
    """Resolutions are cached until clear_cache()."""

    def test_miss_is_cached_until_cleared(self, db_session, make_kennel):
        kennel = make_kennel("BrH3")
        resolver = TagResolver(db_session)
        assert not resolver.resolve("Brooklyn").matched

        db_session.add(KennelAlias(kennel_id=kennel.id, alias="Brooklyn"))
        db_session.flush()
        assert not resolver.resolve("Brooklyn").matched

        resolver.clear_cache()
        assert resolver.resolve("Brooklyn").kennel_id == kennel.id

    def test_alias_created_then_cache_cleared_resolves(self, db_session, make_kennel):
        kennel = make_kennel("BrH3")
        resolver = TagResolver(db_session)
        resolver.resolve("Brooklyn Hash")

        KennelService(db_session).add_alias(kennel.id, "Brooklyn Hash")
        resolver.clear_cache()
        assert resolver.resolve("brooklyn hash").matched
