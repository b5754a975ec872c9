from __future__ import annotations

MAX_SUBJECT_LEN = 32


def normalize_subject(subject: str | None) -> str:
    """
    Canonical form of a subject identifier: trimmed and uppercased.

    " btc " and "BTC" address the same cache rows, phase records and jobs.
    """
    value = (subject or "").strip().upper()
    if not value:
        raise ValueError("subject must not be empty")
    if len(value) > MAX_SUBJECT_LEN:
        raise ValueError(f"subject must be at most {MAX_SUBJECT_LEN} characters")
    return value


def normalize_analysis_type(analysis_type: str | None) -> str:
    value = (analysis_type or "").strip().lower()
    if not value:
        raise ValueError("analysis_type must not be empty")
    return value
