import logging
import re
from typing import Iterable, Optional

from rapidfuzz.distance import JaroWinkler

from epc_reconciler.db.models import MatchStrength, RegisterCertificate, RegisterSuggestion

logger = logging.getLogger(__name__)

STRONG_ADDRESS_SIMILARITY = 0.8
MEDIUM_ADDRESS_SIMILARITY = 0.6


def normalize_address(address: str) -> str:
    """Normalize an address for matching.

    - Lowercase
    - Remove everything except letters, digits and spaces
    - Collapse whitespace
    """
    normalized = address.lower()
    normalized = re.sub(r"[^a-z0-9\s]", "", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()
    return normalized


def similarity(first: Optional[str], second: Optional[str]) -> float:
    """Jaro-Winkler similarity of two addresses after normalization, in [0, 1]."""
    if not first or not second:
        return 0.0
    s1 = normalize_address(first)
    s2 = normalize_address(second)
    if s1 == s2 and s1:
        return 1.0
    if not s1 or not s2:
        return 0.0
    return JaroWinkler.similarity(s1, s2)


def ratings_match(first: Optional[str], second: Optional[str]) -> bool:
    if not first or not second:
        return False
    return first.strip().upper() == second.strip().upper()


def determine_match_strength(address_score: float) -> MatchStrength:
    if address_score >= STRONG_ADDRESS_SIMILARITY:
        return MatchStrength.STRONG
    if address_score >= MEDIUM_ADDRESS_SIMILARITY:
        return MatchStrength.MEDIUM
    return MatchStrength.WEAK


def score_certificates(
    certificates: Iterable[RegisterCertificate],
    display_address: Optional[str],
    rating: Optional[str] = None,
) -> list[RegisterSuggestion]:
    """Score every certificate against the listing address and rating."""
    scored = []
    for cert in certificates:
        score = similarity(display_address, cert.retrieved_address)
        scored.append(
            RegisterSuggestion(
                **cert.model_dump(include=set(RegisterCertificate.model_fields)),
                address_match_score=score,
                is_rating_match=ratings_match(rating, cert.retrieved_rating),
                match_strength=determine_match_strength(score),
            )
        )
    return scored


def is_qualifying_match(suggestion: RegisterSuggestion) -> bool:
    """Strong on address alone, or medium backed by an identical rating."""
    if suggestion.match_strength is MatchStrength.STRONG:
        return True
    return suggestion.match_strength is MatchStrength.MEDIUM and suggestion.is_rating_match


def best_match(
    certificates: Iterable[RegisterCertificate],
    display_address: Optional[str],
    rating: Optional[str] = None,
) -> Optional[RegisterSuggestion]:
    """Pick the single register entry to adopt, or None.

    The highest-scoring strong candidate wins; failing that, the highest-scoring
    medium candidate whose rating matches the listing.
    """
    qualifying = [
        s for s in score_certificates(certificates, display_address, rating) if is_qualifying_match(s)
    ]
    if not qualifying:
        return None

    strong = [s for s in qualifying if s.match_strength is MatchStrength.STRONG]
    pool = strong or qualifying
    return max(pool, key=lambda s: s.address_match_score)


def plausible_matches(
    certificates: Iterable[RegisterCertificate],
    display_address: Optional[str],
    rating: Optional[str] = None,
    min_score: float = MEDIUM_ADDRESS_SIMILARITY,
) -> list[RegisterSuggestion]:
    """All certificates scoring at least ``min_score``, best first.

    Offered for manual confirmation and later re-evaluation; never adopted
    automatically.
    """
    if not display_address:
        return []
    scored = [
        s
        for s in score_certificates(certificates, display_address, rating)
        if s.address_match_score >= min_score
    ]
    scored.sort(key=lambda s: s.address_match_score, reverse=True)
    return scored


def unique_strong_match(
    certificates: Iterable[RegisterCertificate], display_address: Optional[str]
) -> Optional[RegisterCertificate]:
    """Return the one certificate whose address scores strong, if exactly one does."""
    if not display_address:
        return None
    strong = [
        cert
        for cert in certificates
        if similarity(display_address, cert.retrieved_address) >= STRONG_ADDRESS_SIMILARITY
    ]
    if len(strong) != 1:
        if len(strong) > 1:
            logger.info(
                "%d register entries match '%s' strongly; not adopting any", len(strong), display_address
            )
        return None
    return strong[0]
