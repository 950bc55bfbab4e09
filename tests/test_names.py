"""
Tests for channel name normalization and cleanup.
"""
import pytest

from iptv_gateway.utils.names import (
    cleanup_channel_name,
    collation_key,
    normalize_channel_name,
    strip_duplicate_suffix,
    strip_trailing_number,
)


class TestNormalizeChannelName:
    """Test the comparison key used for every name lookup."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Sky Sport Uno HD .c", "sky sport uno"),
            ("Rai 1 .c", "rai 1"),
            ("Sky Sports F1", "sky sport f1"),
            ("DISCOVERY Channel", "discovery"),
            ("Canale 5 4K", "canale 5"),
            ("  Rete-4 (backup)  ", "rete 4 backup"),
            ("Italia 1 Plus", "italia 1"),
        ],
    )
    def test_normalizes_known_names(self, raw, expected):
        """Test suffix removal, generic tokens and punctuation collapse."""
        assert normalize_channel_name(raw) == expected

    def test_empty_input(self):
        """Test falsy input produces an empty key."""
        assert normalize_channel_name("") == ""
        assert normalize_channel_name(None) == ""

    def test_only_generic_tokens(self):
        """Test a name made only of generic tokens reduces to empty."""
        assert normalize_channel_name("HD TV") == ""

    @pytest.mark.parametrize("raw", ["Sky Sport Uno HD .c", "Rai 1 .s .b", "Euro  Sports+ 2", "TV8"])
    def test_idempotent(self, raw):
        """Test normalizing twice changes nothing."""
        once = normalize_channel_name(raw)
        assert normalize_channel_name(once) == once


class TestCleanupChannelName:
    """Test the display cleanup applied to catalog names."""

    def test_strips_dot_suffix_run(self):
        """Test trailing dot-codes are removed."""
        assert cleanup_channel_name("Rai 1 .c") == "Rai 1"
        assert cleanup_channel_name("Canale 5.s") == "Canale 5"

    def test_keeps_case_and_punctuation(self):
        """Test cleanup does not normalize the rest of the name."""
        assert cleanup_channel_name("Sky Cinema Uno +24") == "Sky Cinema Uno +24"

    def test_empty_is_unknown(self):
        """Test empty names display as 'Unknown'."""
        assert cleanup_channel_name("") == "Unknown"
        assert cleanup_channel_name(None) == "Unknown"


class TestSuffixHelpers:
    """Test duplicate numbering and trailing number helpers."""

    def test_strip_duplicate_index(self):
        """Test the listing's ' (n)' numbering is removed."""
        assert strip_duplicate_suffix("Real Time (2)") == "Real Time"

    def test_strip_legacy_number(self):
        """Test a legacy ' n' numbering is removed."""
        assert strip_duplicate_suffix("Real Time 2") == "Real Time"

    def test_no_suffix(self):
        """Test names without numbering are unchanged."""
        assert strip_duplicate_suffix("Real Time") == "Real Time"

    def test_strip_trailing_number(self):
        """Test trailing number removal on normalized keys."""
        assert strip_trailing_number("sky cinema 2") == "sky cinema"
        assert strip_trailing_number("sky cinema") == "sky cinema"


class TestCollationKey:
    """Test accent- and case-insensitive ordering."""

    def test_accents_and_case_fold(self):
        """Test accented and plain spellings sort together."""
        assert collation_key("Émile") == collation_key("emile")
        assert collation_key("ÀRTE") == "arte"

    def test_ordering(self):
        """Test sorting with the key is alphabetical ignoring accents."""
        names = ["Zeta", "Àrte", "beta"]
        assert sorted(names, key=collation_key) == ["Àrte", "beta", "Zeta"]
