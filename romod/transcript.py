"""Transcript models and speech-engine output conversion.

Everything in here is a pure function of the engine's output text, so the
JSON vs. plain-text fallback logic can be tested without spawning anything.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"

# No diarization is performed, so every segment belongs to this speaker
DEFAULT_SPEAKER = "speaker_0"

# [00:00:00.000 --> 00:00:04.000] text
TIMESTAMP_LINE_RE = re.compile(
    r"\[(\d{2}:\d{2}:\d{2}[.,]\d{3})\s*-->\s*(\d{2}:\d{2}:\d{2}[.,]\d{3})\]\s*(.*)"
)

# Announcement written to stderr when --output-json is given
JSON_OUTPUT_RE = re.compile(r"output_json: saving output to '([^']+)'")


class TranscriptSegment(BaseModel):
    """A single timed piece of a transcript."""

    model_config = ConfigDict(frozen=True)

    start: float = 0.0
    end: float = 0.0
    text: str = ""
    speaker: str = DEFAULT_SPEAKER


class TranscriptResult(BaseModel):
    """Result of a transcription, whatever shape the engine produced."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    segments: List[TranscriptSegment] = Field(default_factory=list)
    language: str = DEFAULT_LANGUAGE
    error: Optional[str] = None

    @classmethod
    def empty(cls, error: Optional[str] = None) -> "TranscriptResult":
        return cls(text="", segments=[], language=DEFAULT_LANGUAGE, error=error)

    def __str__(self) -> str:
        return self.text


def parse_timestamp(timestamp: str) -> float:
    """Convert an HH:MM:SS.mmm timestamp to seconds."""
    hours, minutes, seconds = timestamp.strip().split(":")
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds.replace(",", "."))


def parse_plain_text_output(output: str) -> Dict[str, Any]:
    """Parse the engine's human-readable output.

    Lines in ``[start --> end] text`` form become segments; any other
    non-empty line that is not bracketed is kept as untimed text.

    Returns:
        A dict in the flat segment shape accepted by normalize_result.
    """
    segments: List[Dict[str, Any]] = []
    texts: List[str] = []

    for line in output.strip().splitlines():
        match = TIMESTAMP_LINE_RE.search(line)
        if match:
            start, end, text = match.groups()
            text = text.strip()
            segments.append(
                {
                    "start": parse_timestamp(start),
                    "end": parse_timestamp(end),
                    "text": text,
                    "speaker": DEFAULT_SPEAKER,
                }
            )
            if text:
                texts.append(text)
        elif line.strip() and not line.lstrip().startswith("["):
            texts.append(line.strip())

    return {"text": " ".join(texts), "segments": segments, "language": DEFAULT_LANGUAGE}


def find_json_output_path(stderr: str) -> Optional[Path]:
    """Find the JSON result file the engine announced on its diagnostic stream."""
    match = JSON_OUTPUT_RE.search(stderr)
    if match:
        return Path(match.group(1))
    return None


def _segment_bounds(item: Dict[str, Any]) -> tuple:
    """Extract (start, end) seconds from a structured transcription item."""
    offsets = item.get("offsets")
    if isinstance(offsets, dict) and "from" in offsets:
        # Offsets are in milliseconds
        return offsets.get("from", 0) / 1000.0, offsets.get("to", 0) / 1000.0

    timestamps = item.get("timestamps")
    if isinstance(timestamps, dict):
        if "start" in timestamps or "end" in timestamps:
            return float(timestamps.get("start") or 0), float(timestamps.get("end") or 0)
        if "from" in timestamps:
            try:
                return (
                    parse_timestamp(timestamps["from"]),
                    parse_timestamp(timestamps.get("to", "00:00:00.000")),
                )
            except (ValueError, AttributeError):
                logger.debug(f"Unparseable timestamps in segment: {timestamps}")

    return 0.0, 0.0


def _detect_language(raw: Dict[str, Any]) -> str:
    language = raw.get("language")
    if not language and isinstance(raw.get("result"), dict):
        language = raw["result"].get("language")
    return language or DEFAULT_LANGUAGE


def normalize_result(raw: Dict[str, Any]) -> TranscriptResult:
    """Normalize any of the engine's output shapes into a TranscriptResult.

    Accepted shapes, tried in order:
    - structured: ``{"transcription": [{"offsets"|"timestamps", "text"}]}``
    - flat: ``{"segments": [{"start", "end", "text"}], "text": ...}``
    - bare text: ``{"text": "..."}``
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Unexpected transcript payload: {type(raw).__name__}")

    language = _detect_language(raw)

    transcription = raw.get("transcription")
    if isinstance(transcription, list):
        segments = []
        for item in transcription:
            start, end = _segment_bounds(item)
            segments.append(
                TranscriptSegment(
                    start=start,
                    end=end,
                    text=(item.get("text") or "").strip(),
                    speaker=item.get("speaker") or DEFAULT_SPEAKER,
                )
            )
        text = " ".join(seg.text for seg in segments if seg.text).strip()
        return TranscriptResult(text=text, segments=segments, language=language)

    flat_segments = raw.get("segments")
    if isinstance(flat_segments, list):
        segments = [
            TranscriptSegment(
                start=seg.get("start") or 0.0,
                end=seg.get("end") or 0.0,
                text=seg.get("text") or "",
                speaker=seg.get("speaker") or DEFAULT_SPEAKER,
            )
            for seg in flat_segments
        ]
        return TranscriptResult(
            text=(raw.get("text") or "").strip(), segments=segments, language=language
        )

    text = (raw.get("text") or "").strip()
    if text:
        return TranscriptResult(
            text=text,
            segments=[TranscriptSegment(start=0.0, end=0.0, text=text)],
            language=language,
        )

    return TranscriptResult(text="", segments=[], language=language)


def convert_output(
    stdout: str, structured: Optional[str] = None, expect_json: bool = True
) -> TranscriptResult:
    """Turn raw engine output into a TranscriptResult.

    Args:
        stdout: The engine's primary output stream.
        structured: Contents of the announced JSON file, if one was found.
        expect_json: Whether structured output was requested at all.

    Returns:
        The parsed result. Structured parsing is attempted first (file
        contents, then stdout); any failure there falls back to the
        line-oriented plain-text parse of stdout.
    """
    if expect_json:
        source = structured if structured is not None else stdout
        try:
            return normalize_result(json.loads(source))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to parse structured output ({e}), using plain text")

    return normalize_result(parse_plain_text_output(stdout))
