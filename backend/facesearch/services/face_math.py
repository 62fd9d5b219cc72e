from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from facesearch.core.errors import ErrorCode, FaceSearchError, Result
from facesearch.core.logging import get_logger
from facesearch.schemas.search_schema import FaceDetection, VideoCandidate, VideoMatch
from facesearch.utils.concurrency import chunked
from facesearch.utils.validation import validate_threshold

logger = get_logger(__name__)

MIN_EMBEDDING_LENGTH = 64
MAX_EMBEDDING_LENGTH = 1024
MAX_ABS_COMPONENT = 100.0
SCORE_DECIMALS = 2
DEFAULT_BATCH_SIZE = 10


class CandidateFaces(NamedTuple):
    """A candidate together with the faces found in its thumbnail."""
    candidate: VideoCandidate
    faces: List[FaceDetection]


def compute_cosine_similarity(vector1: Sequence[float], vector2: Sequence[float]) -> float:
    """
    Computes the cosine similarity between two embeddings.

    ArcFace (w600k_mbf.onnx) outputs L2-normalized embeddings, so the dot
    product alone would suffice for engine output. Computing the full
    cosine keeps the score stable for vectors that arrive over the wire.
    Negative similarities carry no identity information for this search
    and are clamped to 0.

    Args:
        vector1: The user embedding.
        vector2: A face embedding from a thumbnail.

    Returns:
        float: A similarity score between 0.0 and 1.0. Higher means more similar.

    Raises:
        FaceSearchError: VALIDATION_ERROR when the lengths differ or a value is not finite.
    """
    vec1 = np.asarray(vector1, dtype=np.float64).flatten()
    vec2 = np.asarray(vector2, dtype=np.float64).flatten()

    if vec1.shape != vec2.shape:
        raise FaceSearchError(
            ErrorCode.VALIDATION_ERROR,
            f"embedding lengths differ: {vec1.shape[0]} vs {vec2.shape[0]}"
        )

    if not (np.all(np.isfinite(vec1)) and np.all(np.isfinite(vec2))):
        raise FaceSearchError(ErrorCode.VALIDATION_ERROR, "embedding contains non-finite values")

    norm_vec1 = np.linalg.norm(vec1)
    norm_vec2 = np.linalg.norm(vec2)

    # Prevent division by zero
    if norm_vec1 == 0 or norm_vec2 == 0:
        return 0.0

    similarity = float(np.dot(vec1, vec2) / (norm_vec1 * norm_vec2))

    return min(1.0, max(0.0, similarity))


def validate_embedding_integrity(embedding: Sequence[float]) -> Tuple[bool, Optional[str]]:
    """
    Rejects vectors no recognition model would produce: all zeros,
    uniform values, implausibly large components, non-finite values or a
    length outside [64, 1024].
    """
    vec = np.asarray(embedding, dtype=np.float64).flatten()

    if not MIN_EMBEDDING_LENGTH <= vec.shape[0] <= MAX_EMBEDDING_LENGTH:
        return False, f"length {vec.shape[0]} outside [{MIN_EMBEDDING_LENGTH}, {MAX_EMBEDDING_LENGTH}]"

    if not np.all(np.isfinite(vec)):
        return False, "non-finite values"

    if not np.any(vec):
        return False, "all-zero vector"

    if np.ptp(vec) == 0:
        return False, "uniform vector"

    if np.max(np.abs(vec)) > MAX_ABS_COMPONENT:
        return False, f"component magnitude above {MAX_ABS_COMPONENT}"

    return True, None


def cosine(vector1: Sequence[float], vector2: Sequence[float]) -> Result[float]:
    """Integrity-checked cosine similarity as a tagged result."""
    for vector in (vector1, vector2):
        ok, reason = validate_embedding_integrity(vector)
        if not ok:
            return Result.failure(ErrorCode.VALIDATION_ERROR, f"invalid embedding: {reason}")

    try:
        return Result.success(compute_cosine_similarity(vector1, vector2))
    except FaceSearchError as e:
        return Result.failure(e.code, e.detail)


def best_match(user_embedding: Sequence[float], faces: Sequence[FaceDetection]) -> float:
    """
    Highest similarity between the user and any face of a thumbnail.
    A failing comparison is skipped, the others still count.
    """
    best = 0.0

    for face in faces:
        result = cosine(user_embedding, face.embedding)
        if not result.ok:
            logger.warning(f"Skipping face comparison: {result.detail}")
            continue
        best = max(best, result.value)

    return best


def round_score(score: float) -> float:
    return round(float(score), SCORE_DECIMALS)


def rank_matches(matches: Sequence[VideoMatch]) -> List[VideoMatch]:
    """Descending score, candidate id ascending on ties."""
    return sorted(matches, key=lambda m: (-m.similarity_score, m.id))


def is_ranked(matches: Sequence[VideoMatch]) -> bool:
    keys = [(-m.similarity_score, m.id) for m in matches]
    return all(a <= b for a, b in zip(keys, keys[1:]))


def score_candidates(
    candidates: Sequence[CandidateFaces],
    user_embedding: Sequence[float],
) -> List[VideoMatch]:
    """
    Scores every candidate that has at least one face, without filtering.
    Scores are rounded here so the threshold is compared against the
    value clients see.
    """
    scored = []

    for item in candidates:
        if not item.faces:
            continue

        candidate = item.candidate
        scored.append(VideoMatch(
            id=candidate.id,
            title=candidate.title,
            thumbnail_url=candidate.thumbnail_url,
            video_url=candidate.video_url,
            source_site=candidate.source_site,
            similarity_score=round_score(best_match(user_embedding, item.faces)),
            detected_faces=item.faces,
        ))

    return scored


def _filter(matches: Sequence[VideoMatch], threshold: float) -> List[VideoMatch]:
    return rank_matches([m for m in matches if m.similarity_score >= threshold])


def filter_and_rank(
    candidates: Sequence[CandidateFaces],
    user_embedding: Sequence[float],
    threshold: float,
) -> Result[List[VideoMatch]]:
    """
    Scores, filters by threshold and ranks a list of candidates.
    """
    try:
        threshold = validate_threshold(threshold)
    except FaceSearchError as e:
        return Result.failure(e.code, e.detail)

    ok, reason = validate_embedding_integrity(user_embedding)
    if not ok:
        return Result.failure(ErrorCode.VALIDATION_ERROR, f"invalid user embedding: {reason}")

    return Result.success(_filter(score_candidates(candidates, user_embedding), threshold))


def rethreshold(matches: Sequence[VideoMatch], threshold: float) -> Result[List[VideoMatch]]:
    """
    Re-filters already scored matches. No similarity is recomputed.
    """
    try:
        threshold = validate_threshold(threshold)
    except FaceSearchError as e:
        return Result.failure(e.code, e.detail)

    return Result.success(_filter(matches, threshold))


def batch_filter_and_rank(
    candidates: Sequence[CandidateFaces],
    user_embedding: Sequence[float],
    threshold: float,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Result[List[VideoMatch]]:
    """
    Chunked variant of filter_and_rank for long candidate lists.
    Each chunk is filtered on its own, then everything is merged and re-ranked.
    """
    merged: List[VideoMatch] = []

    for batch in chunked(list(candidates), batch_size):
        result = filter_and_rank(batch, user_embedding, threshold)
        if not result.ok:
            return result
        merged.extend(result.value)

    return Result.success(rank_matches(merged))


def match_statistics(matches: Sequence[VideoMatch]) -> Dict[str, object]:
    """
    Summary of a result list: count, average/highest/lowest score and a
    coarse quality distribution.
    """
    distribution = {"excellent": 0, "good": 0, "fair": 0, "poor": 0}

    if not matches:
        return {
            "total_matches": 0,
            "average_score": 0.0,
            "highest_score": 0.0,
            "lowest_score": 0.0,
            "score_distribution": distribution,
        }

    scores = [m.similarity_score for m in matches]

    for score in scores:
        if score >= 0.9:
            distribution["excellent"] += 1
        elif score >= 0.8:
            distribution["good"] += 1
        elif score >= 0.7:
            distribution["fair"] += 1
        else:
            distribution["poor"] += 1

    return {
        "total_matches": len(scores),
        "average_score": round_score(sum(scores) / len(scores)),
        "highest_score": max(scores),
        "lowest_score": min(scores),
        "score_distribution": distribution,
    }
