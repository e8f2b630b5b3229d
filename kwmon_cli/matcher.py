# kwmon_cli/matcher.py
"""Case-insensitive keyword matching for commit messages and file bodies."""

from typing import Iterable, List, Optional, Set


def unique_keywords(keywords: Iterable[str]) -> List[str]:
    """Drop blank keywords and case-insensitive repeats, keeping the first spelling seen."""
    seen: Set[str] = set()
    unique = []
    for kw in keywords:
        folded = kw.lower() if kw else ''
        if folded and folded not in seen:
            seen.add(folded)
            unique.append(kw)
    return unique


def match_keywords(text: Optional[str], keywords: Iterable[str]) -> Set[str]:
    """
    Return the subset of ``keywords`` that occur in ``text``.

    A keyword matches when its lowercase form is a substring of the lowercased
    text. No tokenization, regex or stemming is applied. Keywords differing
    only by case collapse to the first one given, and blank keywords never
    match.

    Args:
        text: Commit message or decoded file content. ``None`` matches nothing.
        keywords: Configured keywords for the repository.

    Returns:
        Matched keywords, in their configured spelling.
    """
    if not text:
        return set()

    haystack = text.lower()
    return {kw for kw in unique_keywords(keywords) if kw.lower() in haystack}
