from datetime import date
from unittest.mock import patch

from epc_reconciler.db.models import MatchStrength, RegisterCertificate
from epc_reconciler.utils.address_matching import (
    best_match,
    determine_match_strength,
    normalize_address,
    plausible_matches,
    similarity,
    unique_strong_match,
)


def _cert(address: str, rating: str | None = "C") -> RegisterCertificate:
    return RegisterCertificate(
        retrieved_address=address,
        retrieved_rating=rating,
        certificate_url=f"https://register.example/energy-certificate/{abs(hash(address))}",
        valid_until=date(2031, 5, 12),
        is_expired=False,
    )


class TestNormalizeAddress:
    def test_lowercase(self):
        assert normalize_address("10 DOWNING STREET") == "10 downing street"

    def test_removes_punctuation(self):
        assert normalize_address("Flat 2, 10 Downing St.") == "flat 2 10 downing st"

    def test_collapses_whitespace(self):
        assert normalize_address("  10   Downing\tStreet  ") == "10 downing street"


class TestSimilarity:
    def test_punctuation_and_case_insensitive(self):
        assert similarity("10 Downing Street", "10 downing street!!") == 1

    def test_empty_scores_zero(self):
        assert similarity("", "10 Downing Street") == 0
        assert similarity("10 Downing Street", None) == 0

    def test_only_punctuation_scores_zero(self):
        assert similarity("!!!", "10 Downing Street") == 0

    def test_unrelated_addresses_score_low(self):
        assert similarity("10 Downing Street", "Rose Cottage") < 0.6

    def test_close_addresses_score_high(self):
        assert similarity("12 High Street, Bath", "12 High St, Bath") >= 0.8


class TestMatchStrength:
    def test_thresholds(self):
        assert determine_match_strength(0.8) is MatchStrength.STRONG
        assert determine_match_strength(0.79) is MatchStrength.MEDIUM
        assert determine_match_strength(0.6) is MatchStrength.MEDIUM
        assert determine_match_strength(0.59) is MatchStrength.WEAK


class TestBestMatch:
    def test_returns_none_when_nothing_scores_medium(self):
        certs = [_cert("Rose Cottage"), _cert("The Old Rectory")]
        assert best_match(certs, "10 Downing Street", "C") is None

    def test_returns_none_for_empty_list(self):
        assert best_match([], "10 Downing Street") is None

    def test_prefers_highest_scoring_strong(self):
        certs = [_cert("10 Downing Street, London"), _cert("10 Downing Street")]
        match = best_match(certs, "10 Downing Street", "C")
        assert match is not None
        assert match.retrieved_address == "10 Downing Street"
        assert match.match_strength is MatchStrength.STRONG

    def test_medium_requires_rating_match(self):
        certs = [_cert("12 Downing Road", rating="D")]
        with patch("epc_reconciler.utils.address_matching.similarity", return_value=0.7):
            assert best_match(certs, "10 Downing Street", "C") is None
            match = best_match(certs, "10 Downing Street", "d")
        assert match is not None
        assert match.match_strength is MatchStrength.MEDIUM


class TestPlausibleMatches:
    def test_sorted_descending_and_filtered(self):
        certs = [
            _cert("12 Downing Road"),
            _cert("Rose Cottage"),
            _cert("10 Downing Street"),
            _cert("11 Downing Street"),
        ]
        matches = plausible_matches(certs, "10 Downing Street", "C")
        scores = [m.address_match_score for m in matches]
        assert scores == sorted(scores, reverse=True)
        assert all(score >= 0.6 for score in scores)
        assert matches[0].retrieved_address == "10 Downing Street"
        assert "Rose Cottage" not in [m.retrieved_address for m in matches]

    def test_flags_rating_match(self):
        matches = plausible_matches([_cert("10 Downing Street", rating="c")], "10 Downing Street", "C")
        assert matches[0].is_rating_match

    def test_no_display_address(self):
        assert plausible_matches([_cert("10 Downing Street")], None) == []

    def test_custom_min_score(self):
        certs = [_cert("10 Downing Street"), _cert("12 Downing Road")]
        assert len(plausible_matches(certs, "10 Downing Street", min_score=0.99)) == 1


class TestUniqueStrongMatch:
    def test_single_strong(self):
        certs = [_cert("10 Downing Street"), _cert("Rose Cottage")]
        assert unique_strong_match(certs, "10 downing street").retrieved_address == "10 Downing Street"

    def test_ambiguous_strong(self):
        certs = [_cert("10 Downing Street"), _cert("10 Downing Street")]
        assert unique_strong_match(certs, "10 Downing Street") is None
