from __future__ import annotations

from typing import List, Optional, Tuple


DISCIPLINE_MAP = {
    "A": "Architectural",
    "S": "Structural",
    "M": "Mechanical",
    "P": "Plumbing",
    "E": "Electrical",
    "F": "Fire Protection",
    "FP": "Fire Protection",
    "FA": "Fire Alarm",
    "FS": "Fire Suppression",
    "C": "Civil",
    "L": "Landscape",
    "LP": "Landscape",
    "I": "Interior",
    "ID": "Interior Design",
    "G": "General",
    "T": "Telecommunications",
    "D": "Demolition",
    "EL": "Electrical",
}

# ordered: first keyword found in the title wins
DISCIPLINE_KEYWORDS: List[Tuple[str, str]] = [
    ("MECHANICAL", "Mechanical"),
    ("HVAC", "Mechanical"),
    ("ELECTRICAL", "Electrical"),
    ("PLUMBING", "Plumbing"),
    ("STRUCTURAL", "Structural"),
    ("FIRE", "Fire Protection"),
    ("SPRINKLER", "Fire Protection"),
    ("CIVIL", "Civil"),
    ("SITE", "Civil"),
    ("LANDSCAPE", "Landscape"),
    ("INTERIOR", "Interior"),
    ("ARCHITECTURAL", "Architectural"),
    ("ARCH", "Architectural"),
]

# ordered: SCHEDULE before PLAN etc.
SHEET_KIND_RULES: List[Tuple[Tuple[str, ...], str]] = [
    (("SCHEDULE",), "schedule"),
    (("RCP", "REFLECTED CEILING"), "rcp"),
    (("DETAIL",), "detail"),
    (("LEGEND", "ABBREVIATION", "SYMBOL"), "legend"),
    (("SECTION", "ELEVATION"), "general"),
    (("PLAN", "FLOOR", "ROOF", "SITE"), "plan"),
    (("COVER", "INDEX", "SHEET LIST"), "general"),
]

SHEET_KINDS = ("plan", "rcp", "schedule", "detail", "legend", "general", "unknown")


def discipline_prefix(sheet_number: Optional[str]) -> str:
    if not sheet_number:
        return "UNKNOWN"
    s = sheet_number.upper()
    if s[:2] in DISCIPLINE_MAP:
        return s[:2]
    if s[:1] in DISCIPLINE_MAP:
        return s[:1]
    return "UNKNOWN"


def infer_discipline(sheet_number: Optional[str], sheet_title: Optional[str]) -> Optional[str]:
    prefix = discipline_prefix(sheet_number)
    if prefix != "UNKNOWN":
        return DISCIPLINE_MAP[prefix]
    if sheet_title:
        upper = sheet_title.upper()
        for keyword, discipline in DISCIPLINE_KEYWORDS:
            if keyword in upper:
                return discipline
    return None


def infer_sheet_kind(sheet_title: Optional[str]) -> str:
    if not sheet_title:
        return "unknown"
    upper = sheet_title.upper()
    for keywords, kind in SHEET_KIND_RULES:
        if any(k in upper for k in keywords):
            return kind
    return "general"
