from datetime import date, datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId

# Never leave the API, even on populated user documents.
HIDDEN_FIELDS = {"password", "resetPasswordToken", "resetPasswordExpire", "emailVerificationToken"}


def _convert(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_convert(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d: Dict[str, Any] = {}
    for k, v in doc.items():
        if k in HIDDEN_FIELDS:
            continue
        if k == "_id":
            d["id"] = str(v)
            continue
        d[k] = _convert(v)
    return d


def serialize_list(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in docs]


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Success envelope: {success, message?, data?}"""
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = _convert(data)
    return body
