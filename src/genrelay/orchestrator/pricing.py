"""Token cost table for generation requests."""

from __future__ import annotations

import os

DEFAULT_TOKEN_COST = 1

_DEFAULT_COSTS: dict[tuple[str, str], int] = {
    ("freepik", "image"): 5,
    ("freepik", "video"): 15,
    ("midjourney", "image"): 10,
    ("chatgpt", "chat"): 1,
    ("chatgpt", "image"): 8,
    ("runway", "video"): 20,
}


def token_cost(*, provider: str, kind: str, overrides: str | None = None) -> int:
    """Return token cost for one attempt of a (provider, kind) request.

    ``overrides`` defaults to ``GENRELAY_TOKEN_COSTS``. Lookup order is exact
    override, provider wildcard, kind wildcard, global wildcard, built-in table,
    then ``DEFAULT_TOKEN_COST``.
    """

    raw = overrides if overrides is not None else os.getenv("GENRELAY_TOKEN_COSTS", "")
    mapping = _parse_cost_mapping(raw)
    provider_key = provider.strip().lower()
    kind_key = kind.strip().lower()
    for key in (
        (provider_key, kind_key),
        (provider_key, "*"),
        ("*", kind_key),
        ("*", "*"),
    ):
        cost = mapping.get(key)
        if cost is not None:
            return cost
    return _DEFAULT_COSTS.get((provider_key, kind_key), DEFAULT_TOKEN_COST)


def _parse_cost_mapping(raw: str) -> dict[tuple[str, str], int]:
    """Parse `GENRELAY_TOKEN_COSTS` mapping.

    Format:
    - `provider:kind:cost`
    - multiple entries separated by `,`
    - supports wildcards in provider/kind (`*`)
    """

    parsed: dict[tuple[str, str], int] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 3:
            continue
        provider, kind, cost_raw = parts
        try:
            cost = int(cost_raw)
        except ValueError:
            continue
        if cost < 0:
            continue
        parsed[(provider.lower(), kind.lower())] = cost
    return parsed
