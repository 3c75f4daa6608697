from __future__ import annotations

import re
from typing import Any

import boto3

from video_ingest.core.settings import Settings


_KEY_SAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_key_part(value: str) -> str:
    # Object keys embed external ids; keep them path-safe and bounded.
    part = _KEY_SAFE_RE.sub("_", (value or "").strip()).strip("._-")
    return part[:120] or "x"


def s3_client(settings: Settings):
    kwargs: dict[str, Any] = {"service_name": "s3", "region_name": settings.s3_region}
    if settings.s3_endpoint_url:
        kwargs["endpoint_url"] = settings.s3_endpoint_url
    if settings.s3_access_key_id and settings.s3_secret_access_key:
        kwargs["aws_access_key_id"] = settings.s3_access_key_id
        kwargs["aws_secret_access_key"] = settings.s3_secret_access_key
    return boto3.client(**kwargs)


def public_object_url(settings: Settings, key: str) -> str:
    if settings.s3_public_base_url:
        return f"{settings.s3_public_base_url.rstrip('/')}/{key}"
    if settings.s3_endpoint_url:
        return f"{settings.s3_endpoint_url.rstrip('/')}/{settings.s3_bucket}/{key}"
    return f"https://{settings.s3_bucket}.s3.{settings.s3_region}.amazonaws.com/{key}"
