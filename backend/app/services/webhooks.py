from __future__ import annotations

from typing import Mapping, Optional

from starlette.datastructures import Headers
from twilio.request_validator import RequestValidator


class SignatureVerificationError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def verify_twilio_signature(
    *,
    headers: Headers,
    url: str,
    params: Mapping[str, str],
    auth_token: str,
) -> None:
    if not auth_token:
        raise SignatureVerificationError("twilio auth token is not configured")
    signature = _header_value(headers, ["x-twilio-signature"])
    if not signature:
        raise SignatureVerificationError("missing twilio signature header")
    validator = RequestValidator(auth_token)
    if not validator.validate(url, dict(params), signature):
        raise SignatureVerificationError("invalid twilio signature")
