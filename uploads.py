"""
Multipart upload handling.

Files land in a per-kind subdirectory of UPLOAD_DIR under a generated name
``<field>-<timestamp>-<random><ext>`` and are served back from /uploads.
"""

import os
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet

from fastapi import UploadFile

from config import settings
from exceptions import ValidationFailed
from logging_config import logger

MB = 1024 * 1024


@dataclass(frozen=True)
class UploadRule:
    subdir: str
    extensions: FrozenSet[str]
    max_size: int


UPLOAD_RULES: Dict[str, UploadRule] = {
    "profileImage": UploadRule("profiles", frozenset({".jpeg", ".jpg", ".png", ".gif"}), 5 * MB),
    "document": UploadRule("documents", frozenset({".pdf", ".doc", ".docx", ".txt"}), 10 * MB),
    "studyMaterial": UploadRule(
        "study-materials",
        frozenset({".pdf", ".doc", ".docx", ".ppt", ".pptx", ".txt", ".jpeg", ".jpg", ".png"}),
        20 * MB,
    ),
}


def generated_filename(field: str, original: str) -> str:
    _, ext = os.path.splitext(original)
    ts = int(datetime.utcnow().timestamp() * 1000)
    return f"{field}-{ts}-{secrets.randbelow(10 ** 9)}{ext.lower()}"


async def save_upload(file: UploadFile, field: str) -> Dict[str, Any]:
    rule = UPLOAD_RULES[field]
    if not file or not file.filename:
        raise ValidationFailed.field(field, "No file provided")

    _, ext = os.path.splitext(file.filename)
    if ext.lower() not in rule.extensions:
        allowed = ", ".join(sorted(e.lstrip(".") for e in rule.extensions))
        raise ValidationFailed.field(field, f"Invalid file type. Allowed types: {allowed}")

    content = await file.read()
    limit = min(rule.max_size, settings.MAX_FILE_SIZE)
    if len(content) > limit:
        raise ValidationFailed.field(field, f"File too large. Maximum size is {limit // MB}MB")

    directory = os.path.join(settings.UPLOAD_DIR, rule.subdir)
    os.makedirs(directory, exist_ok=True)
    filename = generated_filename(field, file.filename)
    dest = os.path.join(directory, filename)
    with open(dest, "wb") as f:
        f.write(content)

    logger.info(f"Stored upload {filename} ({len(content)} bytes)")
    return {
        "filename": filename,
        "originalName": file.filename,
        "mimetype": file.content_type,
        "size": len(content),
        "path": f"/uploads/{rule.subdir}/{filename}",
    }
