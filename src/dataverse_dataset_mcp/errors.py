# Dataverse Dataset MCP Server
# File: errors.py
# Version: v1

"""Error taxonomy and Web API error analysis.

Only transport failures and malformed payloads are raised. Expected absence
(unknown view id, no relationship between two tables) is returned as ``None``
or an empty list, and query validation problems are returned as data on the
analysis objects.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


class DataverseError(RuntimeError):
    """Base class for errors raised by this package."""


class ConfigurationError(DataverseError):
    """Environment URL or OAuth settings are missing."""


class NotFoundError(DataverseError):
    """A view, entity or record id did not resolve."""


class MalformedResponseError(DataverseError):
    """The Web API answered with a payload of an unexpected shape."""


@dataclass
class ApiErrorAnalysis:
    """Classification of a failed Web API response."""

    status_code: Optional[int] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    is_relationship_error: bool = False
    is_field_error: bool = False
    is_entity_error: bool = False
    is_permission_error: bool = False
    is_rate_limited: bool = False
    retry_after_seconds: Optional[float] = None
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status_code": self.status_code,
            "error_code": self.error_code,
            "message": self.message,
            "is_relationship_error": self.is_relationship_error,
            "is_field_error": self.is_field_error,
            "is_entity_error": self.is_entity_error,
            "is_permission_error": self.is_permission_error,
            "is_rate_limited": self.is_rate_limited,
            "retry_after_seconds": self.retry_after_seconds,
            "correlation_id": self.correlation_id,
            "request_id": self.request_id,
            "suggestions": list(self.suggestions),
        }


class TransportError(DataverseError):
    """Network failure or non-2xx response from the Web API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        body_preview: Optional[str] = None,
        analysis: Optional[ApiErrorAnalysis] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url
        self.body_preview = body_preview
        self.analysis = analysis


_QUOTED = re.compile(r"'([^']+)'")
_NAMED = re.compile(r"named\s+([^\s,]+)")


def _header(headers: Mapping[str, str], *names: str) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def analyze_api_error(
    status_code: Optional[int],
    body: Any = None,
    headers: Optional[Mapping[str, str]] = None,
) -> ApiErrorAnalysis:
    """Classify a failed response and suggest what to check.

    ``body`` may be the raw text or an already-decoded JSON object.
    """
    headers = headers or {}
    analysis = ApiErrorAnalysis(status_code=status_code)

    payload: Any = body
    if isinstance(body, (str, bytes)):
        try:
            payload = json.loads(body) if body else None
        except ValueError:
            payload = None

    error = payload.get("error") if isinstance(payload, dict) else None
    message = ""
    if isinstance(error, dict):
        analysis.error_code = error.get("code")
        message = str(error.get("message") or "")
        analysis.message = message or None

    lowered = message.lower()

    if "could not find a property named" in lowered or "invalid column name" in lowered:
        analysis.is_field_error = True
        match = _QUOTED.search(message) or _NAMED.search(message)
        field_name = match.group(1) if match else None
        if field_name and field_name.endswith("_value"):
            analysis.is_relationship_error = True
            analysis.suggestions.append(f"Invalid lookup field: '{field_name}'.")
            analysis.suggestions.append(
                "Resolve the relationship between the two tables to get the correct lookup field."
            )
        elif field_name:
            analysis.suggestions.append(
                f"Field '{field_name}' does not exist; check spelling or table metadata."
            )

    if "resource not found for the segment" in lowered:
        analysis.is_entity_error = True
        match = _QUOTED.search(message)
        if match:
            analysis.suggestions.append(
                f"Table '{match.group(1)}' not found; use the collection (plural) name."
            )

    if "does not exist" in lowered and "entity" in lowered:
        analysis.is_entity_error = True
        analysis.suggestions.append("Record not found; check the id or whether it was deleted.")

    if "syntax error" in lowered:
        match = re.search(r"position (\d+)", message)
        where = f" at position {match.group(1)}" if match else ""
        analysis.suggestions.append(f"Query syntax error{where}; check the OData expression.")

    if status_code in (401, 403) or "privilege" in lowered or "not have permission" in lowered:
        analysis.is_permission_error = True
        analysis.suggestions.append(
            "The application user lacks privileges on this table; check its security role."
        )

    if status_code == 429:
        analysis.is_rate_limited = True
        retry_after = _header(headers, "Retry-After")
        if retry_after:
            try:
                analysis.retry_after_seconds = float(retry_after)
            except ValueError:
                analysis.retry_after_seconds = None
        analysis.suggestions.append("Service protection limit reached; retry later.")

    analysis.correlation_id = _header(headers, "mise-correlation-id", "ms-cv")
    analysis.request_id = _header(headers, "x-ms-service-request-id", "req_id")

    return analysis


def make_error(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Small, LLM-friendly error shape used by the tool layer."""
    err: Dict[str, Any] = {"code": code, "message": message}
    if details:
        err["details"] = details
    return err
