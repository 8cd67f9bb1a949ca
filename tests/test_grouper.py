"""
Tests for duplicate grouping.
"""

import pytest

from recordmerge.core.models import RecordSnapshot
from recordmerge.matching import DuplicateGrouper
from recordmerge.matching.grouper import normalize


def contact(record_id, name, email=None):
    return RecordSnapshot(record_id, {"Name": name, "Email": email})


class TestScorePair:
    """Tests for pair scoring."""

    def test_normalize(self):
        """Test value normalization."""
        assert normalize("  Acme   CORPORATION ") == "acme corporation"

    def test_identical_after_normalization(self, accounts):
        """Test records equal after normalization score 100."""
        grouper = DuplicateGrouper()
        a, b, c, _, _ = accounts

        assert grouper.score_pair(a, b, ["Name", "BillingCity"]) == 100.0
        assert grouper.score_pair(a, c, ["Name", "BillingCity"]) == 100.0

    def test_blank_on_both_sides_skipped(self):
        """Test a field blank on both records is skipped."""
        grouper = DuplicateGrouper()
        score = grouper.score_pair(contact("1", "Jane Doe"), contact("2", "jane doe", "  "),
                                   ["Name", "Email"])
        assert score == 100.0

    def test_blank_on_one_side_scores_zero(self):
        """Test a field blank on one record scores zero."""
        grouper = DuplicateGrouper()
        score = grouper.score_pair(contact("1", "Jane Doe", "jane@example.com"),
                                   contact("2", "Jane Doe"), ["Name", "Email"])
        assert score == 50.0

    def test_nothing_comparable(self):
        """Test records with nothing to compare."""
        grouper = DuplicateGrouper()
        assert grouper.score_pair(contact("1", None), contact("2", ""), ["Name"]) is None

    def test_fuzzy_versus_exact(self):
        """Test fuzzy and exact scoring of a misspelling."""
        a = contact("1", "Jonathan Smith")
        b = contact("2", "Jonathon Smith")

        assert DuplicateGrouper().score_pair(a, b, ["Name"]) >= 90
        assert DuplicateGrouper(exact=True).score_pair(a, b, ["Name"]) == 0.0

    def test_word_order_ignored(self):
        """Test word order does not affect the score."""
        score = DuplicateGrouper().score_pair(contact("1", "Smith Jane"), contact("2", "Jane Smith"), ["Name"])
        assert score == 100.0


class TestFindGroups:
    """Tests for clustering."""

    def test_account_cluster(self, accounts):
        """Test the Account duplicates form one group."""
        groups = DuplicateGrouper().find_groups(accounts, ["Name", "BillingCity"], "Account")

        assert len(groups) == 1
        group = groups[0]
        assert group.id == "Account-001A"
        assert group.object_type == "Account"
        assert group.member_record_ids == frozenset({"001A", "001B", "001C"})
        assert group.match_score == 100.0
        assert group.master_record_id is None

    def test_input_order_irrelevant(self, accounts):
        """Test groups do not depend on input order."""
        records = list(reversed(accounts))
        groups = DuplicateGrouper().find_groups(records, ["Name", "BillingCity"], "Account")

        assert [g.id for g in groups] == ["Account-001A"]

    def test_several_groups_ordered(self):
        """Test several groups come back ordered by id."""
        records = [
            contact("9", "Jane Doe"),
            contact("3", "John Roe"),
            contact("5", "jane doe"),
            contact("1", "JOHN ROE"),
            contact("7", "Someone Else"),
        ]

        groups = DuplicateGrouper().find_groups(records, ["Name"], "Contact")

        assert [g.id for g in groups] == ["Contact-1", "Contact-5"]
        assert groups[1].member_record_ids == frozenset({"5", "9"})

    @pytest.mark.parametrize("records", [[], [contact("1", "Solo")]])
    def test_nothing_to_group(self, records):
        """Test inputs with no duplicates."""
        assert DuplicateGrouper().find_groups(records, ["Name"], "Contact") == []

    def test_threshold(self):
        """Test the score threshold."""
        records = [contact("1", "Jonathan Smith"), contact("2", "Jonathon Smith")]

        assert len(DuplicateGrouper(threshold=90).find_groups(records, ["Name"], "Contact")) == 1
        assert DuplicateGrouper(threshold=99).find_groups(records, ["Name"], "Contact") == []
