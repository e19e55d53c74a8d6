from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Protocol


@dataclass
class ExtractionResult:
    """Per-sheet outcome before persistence."""
    sheet_number: Optional[str] = None
    sheet_title: Optional[str] = None
    discipline: Optional[str] = None
    sheet_kind: str = "unknown"
    confidence: float = 0.0
    extraction_source: str = "unknown"
    extraction_notes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SheetIndexRow:
    """
    Persisted unit of work, one per page per job.

    `source_index` is the 0-based position of the page in the document; it is
    not a human page number. Rows are keyed by (job_id, source_index).
    """
    project_id: str
    job_id: str
    source_index: int
    sheet_number: Optional[str] = None
    sheet_title: Optional[str] = None
    discipline: Optional[str] = None
    sheet_kind: str = "unknown"
    confidence: float = 0.0
    extraction_source: str = "unknown"
    extraction_notes: Dict[str, Any] = field(default_factory=dict)
    sheet_render_asset_path: Optional[str] = None
    title_block_asset_path: Optional[str] = None
    crop_asset_path: Optional[str] = None
    crop_valid: bool = False
    crop_reason: str = ""
    crop_strategy: str = "unknown"
    attempt_count: int = 0
    flag_for_review: bool = False
    manual_flag: bool = False

    @classmethod
    def from_result(cls, project_id: str, job_id: str, source_index: int, result: ExtractionResult, **extra: Any) -> "SheetIndexRow":
        return cls(
            project_id=project_id,
            job_id=job_id,
            source_index=source_index,
            sheet_number=result.sheet_number,
            sheet_title=result.sheet_title,
            discipline=result.discipline,
            sheet_kind=result.sheet_kind,
            confidence=result.confidence,
            extraction_source=result.extraction_source,
            extraction_notes=result.extraction_notes,
            **extra,
        )

    def to_record(self) -> Dict[str, Any]:
        """Flat dict for storage; notes serialized to JSON text, booleans as ints."""
        rec = {f.name: getattr(self, f.name) for f in fields(self)}
        rec["extraction_notes"] = json.dumps(self.extraction_notes or {}, ensure_ascii=False, default=str)
        for key in ("crop_valid", "flag_for_review", "manual_flag"):
            rec[key] = 1 if rec[key] else 0
        return rec

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "SheetIndexRow":
        names = {f.name for f in fields(cls)}
        data = {k: v for k, v in rec.items() if k in names}
        notes = data.get("extraction_notes")
        if isinstance(notes, str):
            data["extraction_notes"] = json.loads(notes) if notes else {}
        elif notes is None:
            data["extraction_notes"] = {}
        for key in ("crop_valid", "flag_for_review", "manual_flag"):
            data[key] = bool(data.get(key) or False)
        data["crop_reason"] = data.get("crop_reason") or ""
        data["crop_strategy"] = data.get("crop_strategy") or "unknown"
        data["attempt_count"] = int(data.get("attempt_count") or 0)
        data["extraction_source"] = data.get("extraction_source") or "unknown"
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def placeholder_row(project_id: str, job_id: str, source_index: int, error: str) -> SheetIndexRow:
    """Stand-in row for a page whose processing failed; keeps one row per page."""
    return SheetIndexRow(
        project_id=project_id,
        job_id=job_id,
        source_index=source_index,
        sheet_kind="unknown",
        confidence=0.0,
        extraction_source="unknown",
        extraction_notes={"error": error, "fallback_path": ["placeholder"], "manual_flag": True},
        manual_flag=True,
    )


class SheetIndexStore(Protocol):
    """Persistence port owned by the pipeline; adapters map rows onto their schema."""

    async def upsert_sheet_rows(self, rows: List[SheetIndexRow], batch_size: int = 50) -> int:
        ...

    async def fetch_sheet_index(self, job_id: str) -> List[SheetIndexRow]:
        ...

    async def fetch_titleblock_template(self, job_id: str, discipline: str) -> Optional[Dict[str, Any]]:
        ...

    async def upsert_titleblock_template(self, project_id: Optional[str], job_id: str, template: Dict[str, Any]):
        ...
