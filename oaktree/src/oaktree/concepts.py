"""Helpers for lesson and material key concepts."""

from typing import Any, Dict, Iterable, List, Optional


def normalize_key_concepts(raw: Optional[Iterable[Any]]) -> List[Dict[str, str]]:
    """
    Coerce stored or generated key concepts to `{concept, description}` dicts.

    Bare strings become `{concept, description: ""}`. Objects may use the
    alternative keys LLMs tend to produce (`name`, `title`, `explanation`...).
    Entries without a usable name are dropped.
    """
    if not raw or isinstance(raw, (str, bytes, dict)):
        return []

    concepts = []
    for item in raw:
        if isinstance(item, str):
            name, description = item, ""
        elif isinstance(item, dict):
            name = item.get("concept") or item.get("name") or item.get("key") or item.get("title") or ""
            description = item.get("description") or item.get("desc") or item.get("explanation") or ""
        else:
            continue
        name = str(name).strip()
        if name:
            concepts.append({"concept": name, "description": str(description).strip()})
    return concepts


def format_key_concepts(concepts: List[Dict[str, str]], numbered: bool = False) -> str:
    lines = []
    for index, item in enumerate(concepts, 1):
        text = item["concept"]
        if item.get("description"):
            text += f": {item['description']}"
        lines.append(f"{index}. {text}" if numbered else f"- {text}")
    return "\n".join(lines)
