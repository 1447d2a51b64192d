"""
Error Response Decoding for Service Bus

Turns non-success HTTP responses into ProtocolError values.

Service Bus answers failed REST calls with an XML body such as::

    <Error><Code>401</Code><Detail>InvalidSignature: ...</Detail></Error>

Emulators and gateways sometimes answer with JSON instead, either
``{"Code": 404, "Detail": "..."}`` or ``{"error": {"code": "...", "message": "..."}}``.
"""

import json
import logging
import xml.etree.ElementTree as ET
from typing import Any, Optional, Tuple, Union

import httpx

from .exceptions import ProtocolError

logger = logging.getLogger(__name__)


def _local_name(tag: str) -> str:
    """Strip an XML namespace from a tag."""
    return tag.rsplit("}", 1)[-1]


def _coerce_code(value: Any) -> Optional[Union[int, str]]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return text


def _parse_xml_error(text: str) -> Tuple[Optional[Union[int, str]], Optional[str]]:
    root = ET.fromstring(text)
    if _local_name(root.tag) != "Error":
        raise ValueError(f"unexpected root element <{_local_name(root.tag)}>")

    code = None
    detail = None
    for child in root:
        name = _local_name(child.tag)
        if name == "Code":
            code = _coerce_code(child.text)
        elif name == "Detail":
            detail = (child.text or "").strip()

    if code is None and not detail:
        raise ValueError("no Code or Detail element")
    return code, detail


def _parse_json_error(text: str) -> Tuple[Optional[Union[int, str]], Optional[str]]:
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("error body is not a JSON object")

    if isinstance(data.get("error"), dict):
        error = data["error"]
        code, detail = _coerce_code(error.get("code")), error.get("message")
        if code is None and not detail:
            raise ValueError("no code or message in error object")
        return code, detail

    code = _coerce_code(data.get("Code", data.get("code")))
    detail = data.get("Detail", data.get("detail"))
    if code is None and not detail:
        raise ValueError("no Code or Detail field")
    return code, detail


def decode_error_body(status_code: int, body: bytes) -> ProtocolError:
    """
    Build a ProtocolError from a status code and raw body.

    Args:
        status_code: HTTP status of the failed response
        body: Raw response body

    Returns:
        ProtocolError carrying the decoded code and detail, or the raw
        status and body text when nothing could be decoded
    """
    if not body or not body.strip():
        return ProtocolError(status_code)

    text = body.decode("utf-8", errors="replace")
    stripped = text.lstrip()

    try:
        if stripped.startswith("<"):
            code, detail = _parse_xml_error(stripped)
        else:
            code, detail = _parse_json_error(stripped)
    except (ET.ParseError, ValueError) as exc:
        logger.debug(f"Could not decode error body for status {status_code}: {exc}")
        return ProtocolError(
            status_code,
            raw_body=text,
            message=f"{text} (failed to parse error: {exc}; returned code: {status_code})",
        )

    return ProtocolError(status_code, code=code, detail=detail, raw_body=text)


def read_error(response: httpx.Response) -> ProtocolError:
    """
    Decode a failed response into a ProtocolError.

    The response body must already be loaded (non-streaming request).

    Args:
        response: Response with a non-success status

    Returns:
        ProtocolError describing the failure
    """
    error = decode_error_body(response.status_code, response.content)
    logger.debug(
        f"{response.request.method} request failed with status {response.status_code}: {error.message}"
    )
    return error
