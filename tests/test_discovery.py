"""
Tests for the discovery module.

Tests the strategy chain, caching, record and column inference and the
mappings export.
"""

import pandas as pd
import pytest
import yaml

from relmap.discovery.discoverer import PRIMARY_KEY_WARNING, RelationshipDiscoverer
from relmap.discovery.lookup_fields import (
    build_filter,
    extract_field_name,
    is_lookup_column,
    is_lookup_value_column,
)
from relmap.discovery.mapper import RelationshipMapper
from relmap.discovery.strategies import PatternStrategy, default_strategies
from relmap.models import ColumnDescriptor, Confidence, RelationshipSource

ANNOTATION = "@Microsoft.Dynamics.CRM.lookuplogicalname"


class TestLookupFields:
    """Tests for the lookup column naming helpers."""

    def test_is_lookup_column(self):
        """Test recognizing lookup value columns."""
        assert is_lookup_column("_parentcustomerid_value")
        assert is_lookup_column(f"_parentcustomerid_value{ANNOTATION}")
        assert not is_lookup_column("parentcustomerid")
        assert not is_lookup_column("")
        assert not is_lookup_column(None)

    def test_annotation_is_not_a_value_column(self):
        """Test annotation keys are not value columns."""
        assert is_lookup_value_column("_ownerid_value")
        assert not is_lookup_value_column(f"_ownerid_value{ANNOTATION}")

    def test_extract_field_name(self):
        """Test extracting the attribute name from a lookup column."""
        assert extract_field_name("_parentcustomerid_value") == "parentcustomerid"
        assert extract_field_name(f"_ownerid_value{ANNOTATION}") == "ownerid"

    def test_build_filter_is_unquoted(self):
        """Test the filter value is not quoted."""
        assert build_filter("_parentcustomerid_value", "abc-123") == "_parentcustomerid_value eq abc-123"

    def test_build_filter_requires_arguments(self):
        """Test empty filter arguments raise."""
        with pytest.raises(ValueError):
            build_filter("", "abc")
        with pytest.raises(ValueError):
            build_filter("_parentcustomerid_value", "")


class TestPatternStrategy:
    """Tests for the naming-convention fallback."""

    def test_candidate_order(self):
        """Test naming-convention candidates are tried in order."""
        assert PatternStrategy.candidate_lookup_columns("pum_initiative") == [
            "_pum_initiativeid_value",
            "_parentpum_initiativeid_value",
            "_primarypum_initiativeid_value",
            "_pum_initiative_value",
        ]

    def test_lowercase_variant_for_mixed_case(self):
        """Test mixed-case parents add a lower-case candidate."""
        candidates = PatternStrategy.candidate_lookup_columns("Account")
        assert candidates[0] == "_Accountid_value"
        assert candidates[-1] == "_accountid_value"

    @pytest.mark.asyncio
    async def test_always_answers_with_low_confidence(self):
        """Test the pattern fallback never fails."""
        rel = await PatternStrategy().attempt("pum_initiative", "pum_gantttask")

        assert rel.lookup_column == "_pum_initiativeid_value"
        assert rel.confidence == Confidence.LOW
        assert rel.source == RelationshipSource.PATTERN


class TestRelationshipDiscoverer:
    """Tests for RelationshipDiscoverer.discover and friends."""

    @pytest.mark.asyncio
    async def test_single_matching_lookup_is_high_confidence(self, discoverer):
        """Test one matching lookup gives high confidence."""
        rel = await discoverer.discover("account", "contact")

        assert rel.lookup_column == "_parentcustomerid_value"
        assert rel.display_name == "Company Name"
        assert rel.confidence == Confidence.HIGH
        assert rel.source == RelationshipSource.METADATA
        assert not rel.needs_review

    @pytest.mark.asyncio
    async def test_several_matches_prefer_parent_hint(self, discoverer):
        """Test several matches prefer a parent-named lookup."""
        rel = await discoverer.discover("account", "opportunity")

        assert rel.lookup_column == "_parentaccountid_value"
        assert rel.confidence == Confidence.MEDIUM

    @pytest.mark.asyncio
    async def test_reverse_lookup_describes_swapped_pair(self, discoverer, cache):
        """Test reverse discovery returns the swapped pair."""
        rel = await discoverer.discover("opportunity", "account")

        assert rel.parent_entity == "account"
        assert rel.child_entity == "opportunity"
        assert cache.get_relationship("opportunity", "account") is rel

    @pytest.mark.asyncio
    async def test_pattern_fallback_for_unknown_entities(self, discoverer):
        """Test unknown entities fall back to a pattern guess."""
        rel = await discoverer.discover("pum_initiative", "pum_gantttask")

        assert rel is not None
        assert rel.lookup_column == "_pum_initiativeid_value"
        assert rel.confidence == Confidence.LOW
        assert rel.source == RelationshipSource.PATTERN
        assert rel.needs_review

    @pytest.mark.asyncio
    async def test_invalid_names_make_no_calls(self, discoverer, fake_api):
        """Test invalid names short-circuit without network calls."""
        assert await discoverer.discover("unknown", "contact") is None
        assert await discoverer.discover("account", "") is None
        assert await discoverer.discover(None, "contact") is None

        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_second_discovery_comes_from_cache(self, discoverer, fake_api):
        """Test repeated discovery is served from the cache."""
        first = await discoverer.discover("account", "contact")
        calls = len(fake_api.calls)

        second = await discoverer.discover("account", "contact")

        assert second is first
        assert len(fake_api.calls) == calls

    @pytest.mark.asyncio
    async def test_low_confidence_guess_is_cached(self, discoverer, fake_api):
        """Test pattern guesses are cached too."""
        await discoverer.discover("pum_initiative", "pum_gantttask")
        calls = len(fake_api.calls)

        await discoverer.discover("pum_initiative", "pum_gantttask")

        assert len(fake_api.calls) == calls

    @pytest.mark.asyncio
    async def test_relationship_definition_strategy(self, resolver, cache, fake_api):
        """Test discovery from published relationship definitions."""
        fake_api.add_relationship(
            "pum_initiative", "pum_gantttask", "pum_initiativeid", "pum_initiative_gantttask"
        )
        discoverer = RelationshipDiscoverer(
            resolver, cache, default_strategies(resolver, use_relationship_definitions=True)
        )

        rel = await discoverer.discover("pum_initiative", "pum_gantttask")

        assert rel.lookup_column == "_pum_initiativeid_value"
        assert rel.confidence == Confidence.HIGH
        assert rel.source == RelationshipSource.RELATIONSHIP_DEFINITION

    @pytest.mark.asyncio
    async def test_discover_lookup_column_has_no_fallback(self, discoverer):
        """Test lookup column discovery uses metadata only."""
        assert await discoverer.discover_lookup_column("account", "contact") == "_parentcustomerid_value"
        assert await discoverer.discover_lookup_column("pum_initiative", "pum_gantttask") is None

    @pytest.mark.asyncio
    async def test_build_relationship_filter(self, discoverer):
        """Test building a filter from a discovered relationship."""
        expression = await discoverer.build_relationship_filter("account", "contact", "a1")
        assert expression == "_parentcustomerid_value eq a1"

    @pytest.mark.asyncio
    async def test_clear_cache_forces_refetch(self, discoverer, fake_api):
        """Test clearing the cache refetches metadata."""
        await discoverer.discover("account", "contact")
        discoverer.clear_cache()
        calls = len(fake_api.calls)

        await discoverer.discover("account", "contact")

        assert len(fake_api.calls) > calls

    @pytest.mark.asyncio
    async def test_names_are_stripped(self, discoverer, cache, fake_api):
        """Test surrounding whitespace is dropped from entity names."""
        rel = await discoverer.discover(" account ", "contact\n")

        assert rel.lookup_column == "_parentcustomerid_value"
        assert cache.get_relationship("account", "contact") is rel
        assert all(" " not in path for path in fake_api.calls)


class TestRecordInference:
    """Tests for inferring relationships from sample records."""

    RECORDS = [
        {
            "contactid": "c1",
            "_contactid_value": "c1",
            "_parentcustomerid_value": "a1",
            f"_parentcustomerid_value{ANNOTATION}": "account",
            "_ownerid_value": "u1",
        },
    ]

    @pytest.mark.asyncio
    async def test_annotations_and_metadata(self, discoverer):
        """Test targets come from annotations, then metadata."""
        rels = await discoverer.infer_from_records("contact", self.RECORDS)

        pairs = {(r.parent_entity, r.lookup_column) for r in rels}
        assert pairs == {
            ("account", "_parentcustomerid_value"),
            ("systemuser", "_ownerid_value"),
            ("team", "_ownerid_value"),
        }
        assert all(r.confidence == Confidence.HIGH for r in rels)
        assert all(r.source == RelationshipSource.RECORD_ANALYSIS for r in rels)

    @pytest.mark.asyncio
    async def test_primary_key_is_skipped(self, discoverer):
        """Test the child's own key is not a relationship."""
        rels = await discoverer.infer_from_records("contact", self.RECORDS)
        assert all(r.lookup_column != "_contactid_value" for r in rels)

    @pytest.mark.asyncio
    async def test_accepts_dataframe(self, discoverer):
        """Test records given as a pandas DataFrame."""
        df = pd.DataFrame([
            {"_parentcustomerid_value": "a1", f"_parentcustomerid_value{ANNOTATION}": "account"},
            {"_parentcustomerid_value": "c9", f"_parentcustomerid_value{ANNOTATION}": None},
        ])

        rels = await discoverer.infer_from_records("contact", df)

        assert [(r.parent_entity, r.lookup_column) for r in rels] == [
            ("account", "_parentcustomerid_value"),
        ]

    @pytest.mark.asyncio
    async def test_inference_does_not_replace_cached_pair(self, discoverer, cache):
        """Test inference keeps earlier answers for a pair."""
        discovered = await discoverer.discover("account", "contact")

        await discoverer.infer_from_records("contact", self.RECORDS)

        assert cache.get_relationship("account", "contact") is discovered
        assert cache.get_relationship("systemuser", "contact").source == RelationshipSource.RECORD_ANALYSIS

    @pytest.mark.asyncio
    async def test_empty_records(self, discoverer, fake_api):
        """Test empty input makes no calls."""
        assert await discoverer.infer_from_records("contact", []) == []
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_value_column_without_leading_underscore(self, discoverer):
        """Test `<attr>_value` keys are reported as `_<attr>_value`."""
        rels = await discoverer.infer_from_records("contact", [{"parentcustomerid_value": "a1"}])

        assert {(r.parent_entity, r.lookup_column) for r in rels} == {
            ("account", "_parentcustomerid_value"),
            ("contact", "_parentcustomerid_value"),
        }


class TestColumnInference:
    """Tests for inferring relationships from column lists."""

    @pytest.mark.asyncio
    async def test_columns_by_name_and_type(self, discoverer):
        """Test columns qualify by name or lookup type."""
        columns = [
            ColumnDescriptor("_parentcustomerid_value"),
            {"name": "ownerid", "dataType": "Owner"},
            ColumnDescriptor("_contactid_value"),
            "fullname",
        ]

        result = await discoverer.infer_from_columns("contact", columns)

        assert [p.field_name for p in result.potential_lookups] == [
            "parentcustomerid", "ownerid", "contactid",
        ]
        assert [p.column_name for p in result.skipped_primary_keys] == ["_contactid_value"]
        assert result.skipped_primary_keys[0].warning == PRIMARY_KEY_WARNING

        pairs = {(r.parent_entity, r.lookup_column) for r in result.discovered_relationships}
        assert pairs == {
            ("account", "_parentcustomerid_value"),
            ("contact", "_parentcustomerid_value"),
            ("systemuser", "_ownerid_value"),
            ("team", "_ownerid_value"),
        }
        assert all(
            r.source == RelationshipSource.COLUMN_ANALYSIS for r in result.discovered_relationships
        )

    @pytest.mark.asyncio
    async def test_value_column_without_leading_underscore(self, discoverer):
        """Test `<attr>_value` columns are reported as `_<attr>_value`."""
        result = await discoverer.infer_from_columns("contact", [ColumnDescriptor("parentcustomerid_value")])

        assert [p.field_name for p in result.potential_lookups] == ["parentcustomerid"]
        assert {r.lookup_column for r in result.discovered_relationships} == {"_parentcustomerid_value"}
        assert len(result.discovered_relationships) == 2

    @pytest.mark.asyncio
    async def test_bare_suffix_is_ignored(self, discoverer):
        """Test a column named just `_value` yields nothing."""
        result = await discoverer.infer_from_columns("contact", ["_value"])

        assert result.potential_lookups == []
        assert result.discovered_relationships == []


class TestExport:
    """Tests for exporting discovered mappings."""

    @pytest.mark.asyncio
    async def test_export_filters_low_confidence(self, discoverer):
        """Test export leaves out low-confidence guesses."""
        await discoverer.discover("account", "contact")
        await discoverer.discover("pum_initiative", "pum_gantttask")

        document = discoverer.export_discovered_mappings()

        assert document.startswith("# Relationship mappings discovered at runtime")
        mappings = yaml.safe_load(document)["mappings"]
        assert [m["relationship_name"] for m in mappings] == ["account_contact"]
        assert mappings[0]["lookup_column"] == "_parentcustomerid_value"
        assert "(discovered " in mappings[0]["description"]

    @pytest.mark.asyncio
    async def test_export_with_low_threshold_includes_guesses(self, discoverer):
        """Test a low threshold exports guesses."""
        await discoverer.discover("pum_initiative", "pum_gantttask")

        mappings = yaml.safe_load(discoverer.export_discovered_mappings(Confidence.LOW))["mappings"]

        assert mappings[0]["confidence"] == "low"

    @pytest.mark.asyncio
    async def test_export_loads_back_into_mapper(self, discoverer):
        """Test exported mappings load into the mapper."""
        await discoverer.discover("account", "contact")
        mapper = RelationshipMapper()

        added = mapper.load_mappings(discoverer.export_discovered_mappings())

        assert added == 1
        assert mapper.map_to_lookup_column("account_contact") == "_parentcustomerid_value"

    @pytest.mark.asyncio
    async def test_discovered_relationships_filter(self, discoverer):
        """Test filtering discovered relationships by entity."""
        await discoverer.discover("account", "contact")
        await discoverer.discover("account", "opportunity")

        assert len(discoverer.discovered_relationships()) == 2
        assert len(discoverer.discovered_relationships("opportunity")) == 1
