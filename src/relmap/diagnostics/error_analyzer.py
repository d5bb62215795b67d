"""
Error analyzer for failed Web API responses.

Classifies a response into field, entity, relationship, permission, network
or unclassified errors and attaches suggestions a developer can act on.
Analysis is a pure function of status, headers and body; only
`analyze_with_discovery` touches the network, through the discoverer.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from relmap.exceptions import RelmapError
from relmap.models import ErrorAnalysis, ErrorKind

if TYPE_CHECKING:
    from relmap.discovery.discoverer import RelationshipDiscoverer

logger = logging.getLogger(__name__)

# Lookup attributes that are routinely used in filters without the _value form
KNOWN_PROBLEM_LOOKUPS = ("parentcustomerid", "parentaccountid")

CORRELATION_HEADERS = ("mise-correlation-id", "ms-cv")
REQUEST_ID_HEADERS = ("x-ms-service-request-id", "req_id")
RATE_LIMIT_REMAINING_HEADER = "x-ms-ratelimit-burst-remaining-xrm-requests"
RATE_LIMIT_WINDOW_HEADER = "x-ms-ratelimit-time-remaining-xrm-requests"

FIELD_ERROR_MARKERS = (
    "could not find a property named",
    "could not find a column named",
    "invalid column name",
)
ENTITY_ERROR_MARKER = "resource not found for the segment"

_QUOTED_RE = re.compile(r"'([^']+)'")
_NAMED_RE = re.compile(r"(?:named|column name)\s+([^\s,']+)", re.IGNORECASE)
_SYNTAX_POSITION_RE = re.compile(r"syntax error at position (\d+)", re.IGNORECASE)


def _first_header(headers: httpx.Headers, names) -> Optional[str]:
    for name in names:
        value = headers.get(name)
        if value:
            return value
    return None


def _status_suggestion(status: Optional[int], status_text: str) -> str:
    if status == 404:
        return "Resource not found. Check the entity collection name and the request URL"
    if status == 429:
        return "Request was throttled. Retry after the rate-limit window"
    if status is not None and status >= 500:
        return "Server error. Retry later and quote the correlation id when reporting it"
    return f"Request failed with {status} {status_text}".strip()


class ErrorAnalyzer:
    """
    Turns failed responses into ErrorAnalysis objects.

    Usage:
        analyzer = ErrorAnalyzer()
        if response.is_error:
            analysis = analyzer.analyze(response)
            print(analyzer.format_report(analysis, str(response.request.url)))
    """

    def analyze(self, response: httpx.Response) -> ErrorAnalysis:
        """Classify one failed response. Always returns at least one suggestion."""
        analysis = ErrorAnalysis(
            status=response.status_code,
            status_text=response.reason_phrase,
        )
        self._read_headers(analysis, response.headers)

        raw_body = response.text
        analysis.raw_body = raw_body or None

        error = self._error_object(response) if raw_body else None
        if error is not None:
            analysis.error_code = error.get("code")
            analysis.message = error.get("message") or None
            if analysis.message:
                self._classify_message(analysis, analysis.message)

        if response.status_code in (401, 403):
            analysis.kinds.add(ErrorKind.PERMISSION)
            analysis.suggestions.append(
                "Check user permissions for the target entity and related records"
            )

        if not analysis.kinds:
            analysis.kinds.add(ErrorKind.UNCLASSIFIED)
            if analysis.message and not analysis.suggestions:
                analysis.suggestions.append(
                    f"Unrecognized error from the Web API: \"{analysis.message}\""
                )
        if not analysis.suggestions:
            analysis.suggestions.append(_status_suggestion(analysis.status, analysis.status_text))

        logger.debug(
            f"Analyzed {analysis.status} response: {', '.join(sorted(k.value for k in analysis.kinds))}"
        )
        return analysis

    def analyze_transport_error(self, exc: Exception) -> ErrorAnalysis:
        """Analysis for a request that never got a response."""
        analysis = ErrorAnalysis(
            status_text=type(exc).__name__,
            message=str(exc) or type(exc).__name__,
            kinds={ErrorKind.NETWORK},
        )
        if isinstance(exc, httpx.TimeoutException):
            analysis.suggestions.append(
                "Request timed out. Check connectivity or raise the client timeout"
            )
        else:
            analysis.suggestions.append(
                "Could not reach the Web API. Check the base URL and network connectivity"
            )
        return analysis

    async def analyze_with_discovery(
        self,
        response: httpx.Response,
        parent_entity: Optional[str] = None,
        child_entity: Optional[str] = None,
        discoverer: Optional[RelationshipDiscoverer] = None,
    ) -> ErrorAnalysis:
        """
        Analyze a response and, for relationship errors, ask discovery for the
        correct lookup column. Its answer (or its absence) goes first in the
        suggestions.
        """
        analysis = self.analyze(response)
        if not (analysis.is_relationship_error and parent_entity and child_entity and discoverer):
            return analysis

        logger.info(f"Running discovery for error analysis: {parent_entity} -> {child_entity}")
        try:
            relationship = await discoverer.discover(parent_entity, child_entity)
        except (httpx.HTTPError, RelmapError) as e:
            logger.warning(f"Discovery failed during error analysis: {e}")
            analysis.suggestions[:0] = [
                f"Relationship discovery unavailable: {e}",
                "Check Web API access and entity permissions",
            ]
            return analysis

        if relationship is not None:
            analysis.suggestions[:0] = [
                f"Discovery found relationship: \"{relationship.lookup_column}\"",
                f"Confidence: {relationship.confidence.value} ({relationship.source.value})",
                f"Use this lookup column in your queries: {relationship.lookup_column} eq [parent-id]",
            ]
        else:
            analysis.suggestions[:0] = [
                f"Relationship discovery failed for {parent_entity} -> {child_entity}",
                "Possible reasons: no relationship exists, incorrect entity names or missing permissions",
                "Check entity metadata manually or verify the relationship configuration",
            ]
        return analysis

    def format_report(self, analysis: ErrorAnalysis, url: Optional[str] = None) -> str:
        """Multi-line, human-readable report for logs and the console."""
        if analysis.is_network_error:
            lines = [f"Web API unreachable: {analysis.message}"]
        else:
            lines = [f"Web API error: {analysis.status} {analysis.status_text}"]
        if url:
            lines.append(f"API: {url}")
        if analysis.error_code:
            lines.append(f"Error code: {analysis.error_code}")
        if analysis.message and not analysis.is_network_error:
            lines.append(f"Message: {analysis.message}")
        elif analysis.raw_body:
            lines.append(f"Raw response: {analysis.raw_body}")

        kinds = sorted(k.value for k in analysis.kinds)
        if kinds:
            lines.append(f"Classification: {', '.join(kinds)}")
        for suggestion in analysis.suggestions:
            lines.append(f"  - {suggestion}")

        if analysis.correlation_id:
            lines.append(f"Correlation ID: {analysis.correlation_id}")
        if analysis.request_id:
            lines.append(f"Request ID: {analysis.request_id}")
        if analysis.rate_limit_remaining or analysis.rate_limit_window:
            lines.append(
                f"Rate limit: {analysis.rate_limit_remaining or 'N/A'} requests remaining, "
                f"{analysis.rate_limit_window or 'N/A'}s window"
            )
        lines.append(f"Time: {datetime.now(timezone.utc).isoformat()}")
        return "\n".join(lines)

    @staticmethod
    def _read_headers(analysis: ErrorAnalysis, headers: httpx.Headers) -> None:
        analysis.correlation_id = _first_header(headers, CORRELATION_HEADERS)
        analysis.request_id = _first_header(headers, REQUEST_ID_HEADERS)
        analysis.rate_limit_remaining = headers.get(RATE_LIMIT_REMAINING_HEADER)
        analysis.rate_limit_window = headers.get(RATE_LIMIT_WINDOW_HEADER)

    @staticmethod
    def _error_object(response: httpx.Response) -> Optional[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            return data["error"]
        return None

    def _classify_message(self, analysis: ErrorAnalysis, message: str) -> None:
        lower = message.lower()

        if any(marker in lower for marker in FIELD_ERROR_MARKERS):
            analysis.kinds.add(ErrorKind.FIELD)
            match = _QUOTED_RE.search(message) or _NAMED_RE.search(message)
            field_name = match.group(1).rstrip(".") if match else ""
            if field_name:
                analysis.field_name = field_name
                analysis.suggestions.append(
                    f"Field '{field_name}' doesn't exist. Check entity metadata or field spelling"
                )
            else:
                analysis.suggestions.append(
                    "A selected or filtered field doesn't exist. Check entity metadata or field spelling"
                )

        if ENTITY_ERROR_MARKER in lower:
            analysis.kinds.add(ErrorKind.ENTITY)
            match = _QUOTED_RE.search(message)
            analysis.segment = match.group(1) if match else None
            name = f"'{analysis.segment}' " if analysis.segment else ""
            analysis.suggestions.append(
                f"Entity {name}not found. Check the name and use the plural collection form "
                "(e.g. 'contacts' not 'contact')"
            )

        self._classify_relationship(analysis, lower)

        match = _SYNTAX_POSITION_RE.search(message)
        if match:
            analysis.suggestions.append(
                f"Query syntax error at position {match.group(1)}. Check the OData syntax"
            )

        if "entity" in lower and "does not exist" in lower:
            analysis.suggestions.append(
                "Record not found. Check the id or verify the record wasn't deleted"
            )

    @staticmethod
    def _classify_relationship(analysis: ErrorAnalysis, lower_message: str) -> None:
        field_name = analysis.field_name or ""
        names_known_lookup = any(name in lower_message for name in KNOWN_PROBLEM_LOOKUPS)
        if not (names_known_lookup or field_name.endswith("_value")):
            return

        analysis.kinds.add(ErrorKind.RELATIONSHIP)
        suggestions: List[str]
        if "_value" in field_name:
            suggestions = [
                f"Invalid lookup field: \"{field_name}\"",
                "Run relationship discovery to find the correct lookup column",
            ]
        else:
            suggestions = [
                "Filter on the lookup column form '_<attribute>_value', "
                "e.g. '_parentcustomerid_value' for account-contact relationships",
                "Enable relationship discovery to find the correct lookup column automatically",
            ]
        analysis.suggestions.extend(suggestions)
