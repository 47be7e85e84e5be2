"""Client for the remote product image editing service."""
from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Any, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

_DATA_URL_PATTERN = re.compile(r"^data:(image/[a-z0-9.+-]+);base64,(.+)$", re.IGNORECASE | re.DOTALL)


class ImageEditError(RuntimeError):
    """Raised when an edited image could not be produced."""


def parse_data_url(value: str) -> Tuple[str, bytes]:
    """Split a ``data:image/...;base64,`` URL into its MIME type and raw bytes."""

    match = _DATA_URL_PATTERN.match((value or "").strip())
    if match is None:
        raise ImageEditError("Invalid image format")
    try:
        data = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageEditError("Invalid image format") from exc
    return match.group(1).lower(), data


def to_data_url(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


class ImageEditor:
    """Sends one source image plus an instruction and returns the edited PNG.

    A single attempt is made per call; failures are reported as
    :class:`ImageEditError` with a message fit for showing to the user.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = "gemini-2.5-flash-image",
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def edit_image(self, image: bytes, mime_type: str, prompt: str) -> bytes:
        if not self.api_key:
            raise ImageEditError(
                "API Key is missing. Please check your environment configuration."
            )
        if not image:
            raise ImageEditError("No source image provided")
        if not (prompt or "").strip():
            raise ImageEditError("An editing instruction is required")
        payload = {
            "contents": {
                "parts": [
                    {
                        "inlineData": {
                            "data": base64.b64encode(image).decode("ascii"),
                            "mimeType": mime_type,
                        }
                    },
                    {"text": prompt},
                ]
            }
        }
        url = f"{self.base_url}/v1beta/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key}
        try:
            if self._client is not None:
                response = self._client.post(
                    url, json=payload, headers=headers, timeout=self.timeout
                )
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error("Image edit request rejected: %s", exc)
            raise ImageEditError(
                f"Image service returned {exc.response.status_code}: {_error_message(exc.response)}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Image edit request failed: %s", exc)
            raise ImageEditError("Failed to reach the image service. Please try again.") from exc
        except ValueError as exc:
            raise ImageEditError("Image service returned an unreadable response") from exc
        return _extract_image(body)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.reason_phrase


def _extract_image(body: Any) -> bytes:
    candidates = body.get("candidates") if isinstance(body, dict) else None
    first = candidates[0] if isinstance(candidates, list) and candidates else None
    content = first.get("content") if isinstance(first, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if isinstance(parts, list):
        for part in parts:
            inline = part.get("inlineData") if isinstance(part, dict) else None
            if isinstance(inline, dict) and inline.get("data"):
                try:
                    return base64.b64decode(inline["data"])
                except (binascii.Error, TypeError, ValueError) as exc:
                    raise ImageEditError("Image service returned corrupt image data") from exc
    raise ImageEditError("No image data found in the response.")


__all__ = ["ImageEditError", "ImageEditor", "parse_data_url", "to_data_url"]
