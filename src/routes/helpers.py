"""
Shared helpers for API routes.
Contains: JSON coercion of store rows and service payloads, request parsing.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from feature_matrix import DOMAINS

log = logging.getLogger("api")


# ─── Type coercion ──────────────────────────────────────────

def _to_jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_jsonable(v) for v in value]
    if is_dataclass(value) and not isinstance(value, type):
        return _to_jsonable(asdict(value))
    return value


def _num(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ─── Request parsing ───────────────────────────────────────

def _parse_day(value: Optional[str]) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid date: {value}")


def _require_domain(domain: str) -> str:
    if domain not in DOMAINS:
        raise HTTPException(
            status_code=400,
            detail=f"unknown domain '{domain}' (expected one of: {', '.join(DOMAINS)})",
        )
    return domain


# ─── Payload builders ──────────────────────────────────────

def _patterns_payload(patterns: List[Any]) -> List[Dict[str, Any]]:
    return [_to_jsonable(p.to_dict()) for p in patterns]


def _type_counts(patterns: List[Dict[str, Any]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for p in patterns:
        counts[p["type"]] = counts.get(p["type"], 0) + 1
    return counts
