"""
Maps VirusTotal URL report payloads to scan results.

The classification rule is fixed: any malicious verdict makes the URL
malicious; otherwise it is suspicious once the suspicious count reaches the
threshold, and clean below it.
"""

from typing import Any, Mapping

from .config import DEFAULT_THRESHOLD
from .enums import ScanStatus
from .exceptions import ProtocolError
from .models import ScanResult


def classify(malicious: int, suspicious: int, threshold: int = DEFAULT_THRESHOLD) -> ScanStatus:
    """Apply the threshold rule to aggregate verdict counts."""
    if malicious > 0:
        return ScanStatus.MALICIOUS
    if suspicious >= threshold:
        return ScanStatus.SUSPICIOUS
    return ScanStatus.CLEAN


def _require_mapping(value: Any, field_name: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise ProtocolError(
            code="malformed_payload",
            message=f"Missing or malformed field: {field_name}",
            details={"field": field_name},
        )
    return value


def _count(stats: Mapping, key: str) -> int:
    value = stats.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(
            code="malformed_payload",
            message=f"Non-integer stat: {key}",
            details={"field": f"last_analysis_stats.{key}", "value": repr(value)},
        )
    return value


def build_scan_result(url: str, payload: Any, report_link: str = "") -> ScanResult:
    """
    Build a ScanResult from a `GET /urls/{id}` payload.

    Args:
        url: The normalized URL the payload belongs to
        payload: Decoded JSON body of a successful lookup
        report_link: GUI deep link for the URL

    Returns:
        ScanResult with counts, engine lists and scan date

    Raises:
        ProtocolError: If `data.attributes.last_analysis_results` or
            `last_analysis_stats` is missing or malformed
    """
    data = _require_mapping(_require_mapping(payload, "payload").get("data"), "data")
    attributes = _require_mapping(data.get("attributes"), "data.attributes")
    results = _require_mapping(
        attributes.get("last_analysis_results"),
        "data.attributes.last_analysis_results",
    )
    stats = _require_mapping(
        attributes.get("last_analysis_stats"),
        "data.attributes.last_analysis_stats",
    )

    malicious_engines = []
    suspicious_engines = []
    for engine, verdict in results.items():
        verdict = _require_mapping(verdict, f"last_analysis_results.{engine}")
        category = verdict.get("category")
        if category == "malicious":
            malicious_engines.append(engine)
        elif category == "suspicious":
            suspicious_engines.append(engine)

    last_scan = attributes.get("last_analysis_date")
    if isinstance(last_scan, bool) or not isinstance(last_scan, int):
        last_scan = None

    return ScanResult(
        url=url,
        malicious=_count(stats, "malicious"),
        suspicious=_count(stats, "suspicious"),
        harmless=_count(stats, "harmless"),
        total_engines=len(results),
        malicious_engines=tuple(malicious_engines),
        suspicious_engines=tuple(suspicious_engines),
        last_scan=last_scan,
        report_link=report_link,
    )


def classify_result(result: ScanResult, threshold: int = DEFAULT_THRESHOLD) -> ScanStatus:
    return classify(result.malicious, result.suspicious, threshold)
