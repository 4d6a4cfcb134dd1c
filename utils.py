import re
import time
from datetime import datetime
from typing import Any

from bson.objectid import ObjectId
from fastapi import HTTPException


def serialize_doc(doc: Any) -> Any:
    """Make a stored document JSON friendly: _id -> id, ObjectId -> str, datetime -> ISO string."""
    if isinstance(doc, dict):
        out = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = serialize_doc(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    return doc


def parse_object_id(value: str, label: str = "id") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {label}.")
    return ObjectId(value)


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_slug(name: str) -> str:
    base = name.lower().replace("&", "and")
    base = re.sub(r"[^a-z0-9\s-]", "", base)
    base = re.sub(r"\s+", "-", base)
    base = re.sub(r"-+", "-", base)
    return f"{base}-{_now_ms()}"
