from collections.abc import Iterable
from typing import Any


def _dedupe(candidates: Iterable[Any]) -> list[str]:
    # Ledger tags compare case-insensitively; the first spelling wins.
    tags: list[str] = []
    seen: set[str] = set()
    for item in candidates:
        tag = str(item).strip()
        if tag and tag.lower() not in seen:
            tags.append(tag)
            seen.add(tag.lower())
    return tags


def parse_tag_list(raw_tags: str | None) -> list[str]:
    if not raw_tags:
        return []
    return _dedupe(raw_tags.split(","))


def normalize_tags(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return parse_tag_list(value)
    if isinstance(value, (list, tuple, set)):
        return _dedupe(value)
    return []


def merge_tags(existing_tags: list[str] | None, new_tags: list[str]) -> list[str]:
    return _dedupe([*(existing_tags or []), *new_tags])
