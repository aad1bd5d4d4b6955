"""
Unit tests for text normalization and similarity strategies
"""

import pytest
from reconciliation.normalizer import Normalizer, normalize_text, compact, normalize_address
from reconciliation.similarity import (
    ContainmentSimilarity,
    JaroWinklerSimilarity,
    TokenSortSimilarity,
    get_similarity,
)


class TestNormalizer:
    """Test free-text normalization rules"""

    def test_text_folds_case_punctuation_and_whitespace(self):
        assert normalize_text("  NINA  Kraviz @ Berghain!! ") == "nina kraviz berghain"

    def test_ampersand_becomes_and(self):
        assert normalize_text("Drum&Bass") == "drum and bass"

    def test_non_text_is_empty(self):
        assert normalize_text(None) == ""
        assert normalize_text(42) == ""
        assert normalize_text("") == ""

    def test_compact_removes_spaces(self):
        assert compact("Nina Kraviz at Berghain") == compact("NINA KRAVIZ AT BERGHAIN")
        assert compact("Water gate") == "watergate"

    def test_noise_words_are_dropped(self):
        normalizer = Normalizer(noise_words=("the", "club"))
        assert normalizer.text("The Tresor Club") == "tresor"

    def test_postal_code_detection(self):
        normalizer = Normalizer()
        assert normalizer.postal_code("Am Wriezener Bahnhof, 10243 Berlin") == "10243"
        assert normalizer.postal_code("1 Camden High St, London NW1 7JE") == "NW1 7JE"
        assert normalizer.postal_code("no digits here") is None

    def test_address_strips_city_and_postal_code(self):
        parts = normalize_address("Falckensteinstraße 49, 10997 Berlin, Germany", city="Berlin", country="Germany")
        assert parts.postal_code == "10997"
        assert parts.street == "Falckensteinstraße 49"
        assert parts.normalized == "falckensteinstrasse 49"

    def test_address_uses_first_segment_only(self):
        parts = normalize_address("Köpenicker Str. 70; Hinterhof")
        assert parts.street == "Köpenicker Str. 70"

    def test_empty_address(self):
        parts = normalize_address("   ")
        assert parts.street == ""
        assert parts.postal_code is None


class TestSimilarity:
    """Test pluggable similarity strategies"""

    @pytest.mark.parametrize("strategy", ["token_sort", "jaro_winkler", "containment"])
    def test_bounds(self, strategy):
        similarity = get_similarity(strategy)
        assert similarity("berghain", "berghain") == 1.0
        assert similarity("", "berghain") == 0.0
        assert 0.0 <= similarity("berghain", "tresor") <= 1.0

    def test_token_sort_ignores_word_order(self):
        assert TokenSortSimilarity()("kraviz nina", "nina kraviz") == 1.0

    def test_jaro_winkler_rewards_shared_prefix(self):
        similarity = JaroWinklerSimilarity()
        assert similarity("watergate", "watergate club") > similarity("watergate", "club watergate")

    def test_containment_uses_length_ratio(self):
        assert ContainmentSimilarity()("tresor", "tresor berlin") == pytest.approx(6 / 13)

    def test_containment_falls_back_to_word_overlap(self):
        assert ContainmentSimilarity()("about blank", "blank about party") == pytest.approx(2 / 3)

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            get_similarity("soundex")
