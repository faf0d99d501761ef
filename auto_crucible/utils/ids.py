"""Deterministic identifiers."""

import hashlib


def decision_id(request_id: str, weights_version: int, mode_value: str) -> str:
    """
    ID of a triage decision.

    The same request judged under the same calibration version and mode always
    gets the same ID, so re-deriving a decision is idempotent.

    Returns:
        16-character hex digest
    """
    key = f"{request_id}|v{weights_version}|{mode_value}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]
