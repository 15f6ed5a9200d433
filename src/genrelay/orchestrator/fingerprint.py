"""Content fingerprints used as result cache keys."""

from __future__ import annotations

import hashlib
import json
import re

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_prompt(prompt: str) -> str:
    """Trim, collapse internal whitespace and lowercase."""

    return _WHITESPACE_RE.sub(" ", prompt).strip().lower()


def compute_fingerprint(
    *,
    kind: str,
    provider: str,
    model: str,
    prompt: str,
    auxiliary_ref: str | None = None,
) -> str:
    """Stable sha256 over the inputs that determine a generation result."""

    payload = {
        "kind": kind.strip().lower(),
        "provider": provider.strip().lower(),
        "model": model.strip(),
        "prompt": normalize_prompt(prompt),
    }
    if auxiliary_ref:
        payload["auxiliary_ref"] = auxiliary_ref.strip()
    encoded = json.dumps(payload, ensure_ascii=False, sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
