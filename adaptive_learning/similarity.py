"""
Similarity Metrics
==================

Set-overlap and edit-distance measures used to find historical task
executions that resemble a new task.
"""

import posixpath
from typing import Iterable


def jaccard_similarity(set1: Iterable[str], set2: Iterable[str]) -> float:
    """
    Intersection over union of two collections treated as sets.

    Two empty collections score 0.0 (there is no overlap evidence).
    """
    a = set(set1)
    b = set(set2)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def levenshtein_distance(s1: str, s2: str) -> int:
    """Classic dynamic-programming edit distance over code points."""
    if not s1:
        return len(s2)
    if not s2:
        return len(s1)

    # Full (len1+1) x (len2+1) table.
    rows = len(s1) + 1
    cols = len(s2) + 1
    matrix = [[0] * cols for _ in range(rows)]
    for i in range(rows):
        matrix[i][0] = i
    for j in range(cols):
        matrix[0][j] = j

    for i in range(1, rows):
        for j in range(1, cols):
            cost = 0 if s1[i - 1] == s2[j - 1] else 1
            matrix[i][j] = min(
                matrix[i - 1][j] + 1,  # deletion
                matrix[i][j - 1] + 1,  # insertion
                matrix[i - 1][j - 1] + cost,  # substitution
            )

    return matrix[-1][-1]


def normalize_string(s: str) -> str:
    """Lower-case and keep only letters, digits and spaces."""
    s = s.lower().strip()
    return "".join(ch for ch in s if ch.isalpha() or ch.isdigit() or ch == " ")


def normalized_levenshtein_similarity(s1: str, s2: str) -> float:
    """
    ``1 - distance / max_length`` on normalized strings.

    Identical normalized strings (including two empty ones) score 1.0; a
    single empty side scores 0.0.
    """
    s1 = normalize_string(s1)
    s2 = normalize_string(s2)

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    distance = levenshtein_distance(s1, s2)
    return 1.0 - distance / max(len(s1), len(s2))


def normalize_file_path(path: str) -> str:
    """Clean and lower-case a path; empty and ``.`` paths come back empty."""
    if not path:
        return ""
    cleaned = posixpath.normpath(path.replace("\\", "/")).lower()
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return "" if cleaned == "." else cleaned


def normalize_file_paths(paths: Iterable[str]) -> list[str]:
    """Normalize a list of paths, dropping the ones that clean to nothing."""
    normalized = []
    for p in paths or []:
        n = normalize_file_path(p)
        if n:
            normalized.append(n)
    return normalized


def normalize_for_hash(s: str) -> str:
    """Lower-case and keep only letters and digits, for pattern hash matching."""
    return "".join(ch for ch in s.lower() if ch.isalpha() or ch.isdigit())
