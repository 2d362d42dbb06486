"""
Unit tests for CRM identity resolution
"""

import pytest
from sync.identity import (
    canonical_crm_key,
    extend_crm_id,
    prm_field,
    strip_group_prefix,
    CrmIdentityIndex,
)


class TestCanonicalKey:
    """Test canonical 15-character key derivation"""

    def test_eighteen_character_id_is_truncated(self):
        assert canonical_crm_key("0019000000vGdeJAAS") == "0019000000vGdeJ"

    def test_fifteen_character_id_unchanged(self):
        assert canonical_crm_key("0019000000vGdeJ") == "0019000000vGdeJ"

    def test_other_lengths_unchanged(self):
        assert canonical_crm_key("ABC123") == "ABC123"

    def test_whitespace_stripped(self):
        assert canonical_crm_key("  0019000000vGdeJAAS ") == "0019000000vGdeJ"

    def test_empty_values(self):
        assert canonical_crm_key(None) is None
        assert canonical_crm_key("") is None
        assert canonical_crm_key("   ") is None

    def test_idempotent(self):
        """Canonicalizing twice gives the same key"""
        for value in ["0019000000vGdeJAAS", "0019000000vGdeJ", "short", "x" * 20]:
            once = canonical_crm_key(value)
            assert canonical_crm_key(once) == once


class TestExtendCrmId:
    """Test 18-character checksum suffix"""

    def test_known_suffix(self):
        assert extend_crm_id("0019000000vGdeJ") == "0019000000vGdeJAAS"

    def test_all_lowercase_chunks(self):
        assert extend_crm_id("001900000abcdef") == "001900000abcdefAAA"

    def test_extended_input_round_trips(self):
        assert extend_crm_id("0019000000vGdeJAAS") == "0019000000vGdeJAAS"

    def test_other_lengths_not_extended(self):
        assert extend_crm_id("ABC") == "ABC"
        assert extend_crm_id(None) is None


class TestPrmField:

    def test_exact_name(self):
        assert prm_field({"CrmId": "x"}, "CrmId") == "x"

    def test_camel_case_echo(self):
        assert prm_field({"crmId": "x"}, "CrmId") == "x"

    def test_default(self):
        assert prm_field({}, "CrmId", "fallback") == "fallback"


class TestCrmIdentityIndex:
    """Test canonical-key lookups over PRM accounts"""

    def test_resolves_both_forms(self):
        index = CrmIdentityIndex.build([{"Id": 1, "CrmId": "0019000000vGdeJAAS"}])

        assert index.resolve("0019000000vGdeJ")["Id"] == 1
        assert index.resolve("0019000000vGdeJAAS")["Id"] == 1
        assert "0019000000vGdeJ" in index

    def test_fifteen_char_account_resolves_eighteen_char_lookup(self):
        index = CrmIdentityIndex.build([{"id": 7, "crmId": "0019000000vGdeJ"}])

        assert index.resolve("0019000000vGdeJAAS")["id"] == 7

    def test_first_record_wins_on_duplicate_key(self):
        index = CrmIdentityIndex.build([
            {"Id": 1, "CrmId": "0019000000vGdeJAAS"},
            {"Id": 2, "CrmId": "0019000000vGdeJ"},
        ])

        assert len(index) == 1
        assert index.resolve("0019000000vGdeJ")["Id"] == 1
        assert index.duplicates == ["0019000000vGdeJ"]

    def test_accounts_without_crm_id_ignored(self):
        index = CrmIdentityIndex.build([{"Id": 1, "CrmId": None}, {"Id": 2}])

        assert len(index) == 0
        assert index.resolve(None) is None

    def test_resolve_many_splits_found_and_missing(self):
        index = CrmIdentityIndex.build([{"Id": 1, "CrmId": "0019000000vGdeJ"}])

        found, missing = index.resolve_many(["0019000000vGdeJAAS", "001000000000001"])

        assert list(found) == ["0019000000vGdeJAAS"]
        assert missing == ["001000000000001"]


class TestGroupPrefix:

    @pytest.mark.parametrize("name,expected", [
        ("ptr_Acme", "Acme"),
        ("PTR_Acme", "Acme"),
        ("Acme", "Acme"),
    ])
    def test_strip_group_prefix(self, name, expected):
        assert strip_group_prefix(name) == expected
