# services/moderation/models.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class BoundingBox:
    width: float = 0.0
    height: float = 0.0
    left: float = 0.0
    top: float = 0.0


@dataclass(frozen=True)
class LabelInstance:
    bounding_box: Optional[BoundingBox]
    confidence: float = 0.0


@dataclass(frozen=True)
class ModerationLabel:
    name: str
    confidence: float  # 0-100, as emitted by the analysis service
    parent_name: Optional[str] = None
    taxonomy_level: Optional[int] = None
    instances: Tuple[LabelInstance, ...] = ()

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "ModerationLabel":
        """Accepts both the provider casing (Name/ParentName) and snake_case."""
        name = raw.get("Name", raw.get("name")) or ""
        parent = raw.get("ParentName", raw.get("parent_name")) or None
        level = raw.get("TaxonomyLevel", raw.get("taxonomy_level"))
        instances = []
        for inst in raw.get("Instances") or raw.get("instances") or []:
            if not isinstance(inst, dict):
                continue
            bb = inst.get("BoundingBox")
            box = None
            if isinstance(bb, dict):
                box = BoundingBox(
                    width=float(bb.get("Width") or 0),
                    height=float(bb.get("Height") or 0),
                    left=float(bb.get("Left") or 0),
                    top=float(bb.get("Top") or 0),
                )
            instances.append(LabelInstance(bounding_box=box, confidence=float(inst.get("Confidence") or 0)))
        return cls(
            name=str(name),
            confidence=float(raw.get("Confidence", raw.get("confidence")) or 0),
            parent_name=str(parent) if parent else None,
            taxonomy_level=int(level) if isinstance(level, (int, float)) else None,
            instances=tuple(instances),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"Name": self.name, "Confidence": self.confidence}
        if self.parent_name:
            out["ParentName"] = self.parent_name
        if self.taxonomy_level is not None:
            out["TaxonomyLevel"] = self.taxonomy_level
        if self.instances:
            out["Instances"] = [
                {
                    "BoundingBox": (
                        {
                            "Width": i.bounding_box.width,
                            "Height": i.bounding_box.height,
                            "Left": i.bounding_box.left,
                            "Top": i.bounding_box.top,
                        }
                        if i.bounding_box
                        else None
                    ),
                    "Confidence": i.confidence,
                }
                for i in self.instances
            ]
        return out


@dataclass(frozen=True)
class ModerationCategory:
    id: str
    display_name: str
    description: str
    icon: str
    priority: int
    keywords: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["keywords"] = list(self.keywords)
        return d


@dataclass
class NormalizedModerationResult:
    image_id: str
    source_path: str
    is_flagged: bool
    confidence_score: float  # 0-1
    matched_labels: List[ModerationLabel] = field(default_factory=list)
    assigned_category: Optional[ModerationCategory] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_id": self.image_id,
            "source_path": self.source_path,
            "is_flagged": self.is_flagged,
            "confidence_score": self.confidence_score,
            "matched_labels": [l.to_dict() for l in self.matched_labels],
            "assigned_category": self.assigned_category.to_dict() if self.assigned_category else None,
        }


@dataclass(frozen=True)
class CategoryGroup:
    category: ModerationCategory
    image_ids: Tuple[str, ...]
    average_confidence: float

    @property
    def description(self) -> str:
        return f"{self.category.description} ({len(self.image_ids)} images)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category_id": self.category.id,
            "name": self.category.display_name,
            "description": self.description,
            "icon": self.category.icon,
            "image_ids": list(self.image_ids),
            "average_confidence": self.average_confidence,
        }


@dataclass(frozen=True)
class VirtualImageUpdate:
    virtual_image_id: str
    is_flagged: bool
    confidence_score: float
    matched_labels: Tuple[ModerationLabel, ...]
    raw_analysis: Dict[str, Any]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "virtualImageId": self.virtual_image_id,
            "nsfwDetection": {
                "isNsfw": self.is_flagged,
                "confidenceScore": self.confidence_score,
                "moderationLabels": [l.name for l in self.matched_labels],
            },
            "fullRekognitionData": self.raw_analysis,
        }
