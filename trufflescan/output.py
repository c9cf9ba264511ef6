"""Result sinks: plain text, legacy JSON and structured JSON, one line per result."""

import json
import sys
from typing import Any, Dict, Optional, TextIO

from trufflescan.config import OutputMode
from trufflescan.models import Result

BANNER = "🐷🔑🐷  TruffleScan. Unearth your secrets. 🐷🔑🐷\n"


def _stream(stream: Optional[TextIO]) -> TextIO:
    return stream if stream is not None else sys.stdout


def print_plain_output(result: Result, stream: Optional[TextIO] = None) -> None:
    out = _stream(stream)
    header = "✅ Found verified result 🐷🔑" if result.verified else "Found unverified result 🐷🔑❓"

    lines = [
        header,
        f"Detector Type: {result.detector_name}",
        f"Decoder Type: {result.decoder_name}",
        f"Raw result: {result.raw}",
    ]
    if result.extra_data:
        for key, value in sorted(result.extra_data.items()):
            lines.append(f"{key.capitalize()}: {value}")
    for key, value in sorted(result.metadata.items()):
        lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")

    out.write("\n".join(lines) + "\n\n")
    out.flush()


def structured_record(result: Result) -> Dict[str, Any]:
    return {
        "SourceMetadata": {"Data": {result.source_type.value: result.metadata}},
        "SourceType": result.source_type.value,
        "SourceName": result.source_name,
        "DetectorName": result.detector_name,
        "DecoderName": result.decoder_name,
        "Verified": result.verified,
        "Raw": result.raw,
        "Redacted": result.redacted,
        "ExtraData": result.extra_data,
    }


def print_json(result: Result, stream: Optional[TextIO] = None) -> None:
    out = _stream(stream)
    out.write(json.dumps(structured_record(result)) + "\n")
    out.flush()


def legacy_record(result: Result) -> Dict[str, Any]:
    """Pre-structured JSON layout keyed on the commit that introduced a secret."""
    metadata = result.metadata
    return {
        "branch": metadata.get("branch", ""),
        "commit": metadata.get("message", ""),
        "commitHash": metadata.get("commit", ""),
        "date": metadata.get("timestamp", ""),
        "path": metadata.get("file", ""),
        "reason": result.detector_name,
        "stringsFound": [result.raw],
        "printDiff": result.raw,
        "repository": metadata.get("repository", result.source_name),
        "verified": result.verified,
    }


def print_legacy_json(result: Result, stream: Optional[TextIO] = None) -> None:
    out = _stream(stream)
    out.write(json.dumps(legacy_record(result)) + "\n")
    out.flush()


SINKS = {
    OutputMode.LEGACY_JSON: print_legacy_json,
    OutputMode.JSON: print_json,
    OutputMode.PLAIN: print_plain_output,
}


def render(result: Result, mode: OutputMode, stream: Optional[TextIO] = None) -> None:
    SINKS[mode](result, stream)
