from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from http.client import HTTPException
from typing import Optional, Protocol
from urllib import request
from urllib.error import URLError

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from backend.app.settings import Settings

logger = logging.getLogger("support_line.recordings")


class RecordingDownloadError(Exception):
    pass


class RecordingUploadError(Exception):
    pass


@dataclass(frozen=True)
class RecordingFile:
    recording_sid: str
    content: bytes
    content_type: str


def download_recording(
    *,
    recording_url: str,
    recording_sid: str,
    timeout_seconds: int,
    account_sid: str = "",
    auth_token: str = "",
) -> RecordingFile:
    url = recording_url if recording_url.endswith(".mp3") else f"{recording_url}.mp3"
    req = request.Request(url, method="GET")
    if account_sid and auth_token:
        token = base64.b64encode(f"{account_sid}:{auth_token}".encode("utf-8")).decode("ascii")
        req.add_header("Authorization", f"Basic {token}")
    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            content = response.read()
            content_type = response.headers.get("Content-Type", "audio/mpeg")
    except (URLError, OSError, HTTPException) as exc:
        raise RecordingDownloadError(f"recording download failed: {recording_sid}") from exc
    if not content:
        raise RecordingDownloadError(f"recording download was empty: {recording_sid}")
    return RecordingFile(recording_sid=recording_sid, content=content, content_type=content_type)


class RecordingStorage(Protocol):
    def upload(self, recording: RecordingFile) -> str:
        ...


class S3RecordingStorage:
    def __init__(self, *, bucket: str, region: str, public_base_url: str = "") -> None:
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url
        self.client = boto3.client("s3", region_name=region)

    def upload(self, recording: RecordingFile) -> str:
        key = f"recordings/{recording.recording_sid}.mp3"
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=recording.content,
                ContentType=recording.content_type,
                ACL="public-read",
            )
        except (BotoCoreError, ClientError) as exc:
            raise RecordingUploadError(f"recording upload failed: {recording.recording_sid}") from exc
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"


def build_recording_storage(settings: Settings) -> Optional[RecordingStorage]:
    if not settings.recordings_bucket:
        logger.warning("RECORDINGS_BUCKET is not set; call recordings will not be archived")
        return None
    return S3RecordingStorage(
        bucket=settings.recordings_bucket,
        region=settings.recordings_region,
        public_base_url=settings.recordings_public_base_url,
    )
