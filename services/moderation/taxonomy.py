# services/moderation/taxonomy.py
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from apps.common.log import get_logger
from services.moderation.models import CategoryGroup, ModerationCategory, ModerationLabel
from services.validation.schema_validation import validate_with_schema

logger = get_logger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
TAXONOMY_PATH = REPO_ROOT / "config" / "taxonomy.yaml"

FLAGGED_CONTENT = ModerationCategory(
    id="unknown",
    display_name="Flagged Content",
    description="Content flagged by moderation system",
    icon="🚫",
    priority=1,
    keywords=(),
)

SENSITIVE_CONTENT = ModerationCategory(
    id="sensitive",
    display_name="Sensitive Content",
    description="Content flagged as potentially sensitive",
    icon="⚠️",
    priority=2,
    keywords=(),
)

# Friendlier album names for the categories users find most jarring.
SAFE_DISPLAY_NAMES: Dict[str, str] = {
    "explicit_nudity": "Adult Content",
    "partial_nudity": "Revealing Images",
    "suggestive_content": "Suggestive Images",
    "graphic_violence": "Violent Content",
    "disturbing_content": "Disturbing Images",
    "hate_symbols": "Inappropriate Symbols",
    "rude_gestures": "Inappropriate Gestures",
}


class TaxonomyError(ValueError):
    """Taxonomy config is missing or does not match its schema."""


def load_taxonomy(path: Optional[Path] = None) -> Tuple[ModerationCategory, ...]:
    p = Path(path) if path else TAXONOMY_PATH
    if not p.exists():
        raise TaxonomyError(f"Taxonomy not found: {p}")
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    ok, msg = validate_with_schema(data, "taxonomy")
    if not ok:
        raise TaxonomyError(f"Invalid taxonomy {p}: {msg}")

    categories = tuple(
        ModerationCategory(
            id=c["id"],
            display_name=c["display_name"],
            description=c["description"],
            icon=c["icon"],
            priority=int(c["priority"]),
            keywords=tuple(c["keywords"]),
        )
        for c in data["categories"]
    )
    ids = [c.id for c in categories]
    if len(set(ids)) != len(ids):
        raise TaxonomyError(f"Duplicate category ids in {p}")
    return categories


@lru_cache(maxsize=1)
def default_taxonomy() -> Tuple[ModerationCategory, ...]:
    return load_taxonomy()


def _label_name(label: Any) -> Tuple[str, str]:
    if isinstance(label, ModerationLabel):
        return label.name or "", label.parent_name or ""
    if isinstance(label, dict):
        name = label.get("Name") or label.get("name") or ""
        parent = label.get("ParentName") or label.get("parent_name") or ""
        return str(name), str(parent)
    return str(label or ""), ""


def _matches(keyword: str, name: str, parent: str) -> bool:
    kw = keyword.lower()
    n = name.lower()
    p = parent.lower()
    if n and (kw in n or n in kw):
        return True
    return bool(p) and kw in p


class TaxonomyClassifier:
    """
    Maps raw moderation labels onto the display taxonomy.

    A keyword matches a label when the label name (or its parent) contains
    the keyword, or the keyword contains the label name, case-insensitive.
    """

    def __init__(self, categories: Optional[Sequence[ModerationCategory]] = None) -> None:
        self.categories: Tuple[ModerationCategory, ...] = (
            tuple(categories) if categories is not None else default_taxonomy()
        )

    def classify(self, labels: Optional[Iterable[Any]]) -> ModerationCategory:
        labels = list(labels or [])
        if not labels:
            return FLAGGED_CONTENT

        names = [_label_name(l) for l in labels]
        best: Optional[ModerationCategory] = None
        best_priority: Optional[int] = None

        for category in self.categories:
            if best_priority is not None and category.priority <= best_priority:
                continue
            if any(_matches(kw, n, p) for kw in category.keywords for n, p in names):
                best = category
                best_priority = category.priority

        if best is None:
            logger.debug("No taxonomy match for labels %s", [n for n, _ in names])
            return SENSITIVE_CONTENT
        return best

    def group_by_category(
        self, items: Iterable[Tuple[str, Iterable[Any], float]]
    ) -> List[CategoryGroup]:
        """
        items: (image_id, labels, confidence) triples.
        Returns one group per resulting category, highest priority first.
        """
        order: List[str] = []
        cats: Dict[str, ModerationCategory] = {}
        ids: Dict[str, List[str]] = {}
        confs: Dict[str, List[float]] = {}

        for image_id, labels, confidence in items:
            cat = self.classify(labels)
            if cat.id not in cats:
                order.append(cat.id)
                cats[cat.id] = cat
                ids[cat.id] = []
                confs[cat.id] = []
            ids[cat.id].append(image_id)
            confs[cat.id].append(float(confidence))

        groups = [
            CategoryGroup(
                category=cats[cid],
                image_ids=tuple(ids[cid]),
                average_confidence=sum(confs[cid]) / len(confs[cid]),
            )
            for cid in order
        ]
        # sorted() is stable: equal priorities keep first-seen order
        return sorted(groups, key=lambda g: g.category.priority, reverse=True)

    def get_category(self, category_id: str) -> Optional[ModerationCategory]:
        for c in self.categories:
            if c.id == category_id:
                return c
        return None

    def all_categories(self) -> List[ModerationCategory]:
        return sorted(self.categories, key=lambda c: c.priority, reverse=True)

    @staticmethod
    def safe_display_name(category: ModerationCategory, image_count: int) -> str:
        count_text = "1 image" if image_count == 1 else f"{image_count} images"
        name = SAFE_DISPLAY_NAMES.get(category.id, category.display_name)
        return f"{name} ({count_text})"
