from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class Cue:
    start_sec: float
    end_sec: float
    text: str


_VTT_TS = r"(?:\d{1,2}:)?\d{1,2}:\d{2}\.\d{3}"
_SRT_TS = r"\d{1,2}:\d{2}:\d{2}[,.]\d{1,3}"

_VTT_TIMING_RE = re.compile(rf"^\s*(?P<s>{_VTT_TS})\s*-->\s*(?P<e>{_VTT_TS})(?P<settings>.*)$")
_SRT_TIMING_RE = re.compile(rf"^\s*(?P<s>{_SRT_TS})\s*-->\s*(?P<e>{_SRT_TS})")


def _parse_timestamp(ts: str) -> float:
    ts = (ts or "").strip().replace(",", ".")
    if not ts:
        raise ValueError("empty timestamp")

    # Either HH:MM:SS.mmm or MM:SS.mmm.
    parts = ts.split(":")
    if len(parts) == 3:
        hh, mm, rest = parts
    elif len(parts) == 2:
        hh = "0"
        mm, rest = parts
    else:
        raise ValueError(f"invalid timestamp: {ts}")
    ss, _, frac = rest.partition(".")
    ms = int((frac or "0").ljust(3, "0")[:3])
    return int(hh) * 3600 + int(mm) * 60 + int(ss) + ms / 1000.0


def _format_timestamp(sec: float) -> str:
    total_ms = int(round(max(0.0, sec) * 1000))
    hh, rem = divmod(total_ms, 3_600_000)
    mm, rem = divmod(rem, 60_000)
    ss, ms = divmod(rem, 1000)
    return f"{hh:02d}:{mm:02d}:{ss:02d}.{ms:03d}"


def _normalize(text: str) -> list[str]:
    raw = (text or "").lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")
    return raw.split("\n")


def parse_webvtt(text: str) -> list[Cue]:
    """
    Parse a WebVTT file into cues.

    - Requires the WEBVTT header.
    - Skips NOTE/STYLE/REGION blocks and cue identifiers.
    - Raises ValueError on a cue whose end precedes its start.
    """
    lines = _normalize(text)
    i = 0
    while i < len(lines) and not lines[i].strip():
        i += 1
    if i >= len(lines) or not lines[i].strip().upper().startswith("WEBVTT"):
        raise ValueError("missing WEBVTT header")
    i += 1

    cues: list[Cue] = []
    while i < len(lines):
        line = lines[i].strip()
        if not line:
            i += 1
            continue

        upper = line.upper()
        if upper.startswith("NOTE") or upper.startswith("STYLE") or upper.startswith("REGION"):
            while i < len(lines) and lines[i].strip():
                i += 1
            continue

        # Identifier line before the timing line.
        if not _VTT_TIMING_RE.match(line) and i + 1 < len(lines) and _VTT_TIMING_RE.match(lines[i + 1].strip()):
            i += 1
            line = lines[i].strip()

        m = _VTT_TIMING_RE.match(line)
        if not m:
            i += 1
            continue

        start = _parse_timestamp(m.group("s"))
        end = _parse_timestamp(m.group("e"))
        if end < start:
            raise ValueError(f"cue ends before it starts: {line}")
        i += 1

        text_lines: list[str] = []
        while i < len(lines) and lines[i].strip():
            text_lines.append(lines[i].strip())
            i += 1

        cue_text = "\n".join(text_lines).strip()
        if cue_text:
            cues.append(Cue(start_sec=start, end_sec=end, text=cue_text))

    return cues


def parse_srt(text: str) -> list[Cue]:
    """Parse SubRip: numbered blocks of `HH:MM:SS,mmm --> HH:MM:SS,mmm` plus text."""
    lines = _normalize(text)
    cues: list[Cue] = []
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        m = _SRT_TIMING_RE.match(line)
        if not m:
            i += 1
            continue

        start = _parse_timestamp(m.group("s"))
        end = _parse_timestamp(m.group("e"))
        if end < start:
            raise ValueError(f"cue ends before it starts: {line}")
        i += 1

        text_lines: list[str] = []
        while i < len(lines) and lines[i].strip():
            # A counter directly followed by a timing line starts the next block.
            if lines[i].strip().isdigit() and i + 1 < len(lines) and _SRT_TIMING_RE.match(lines[i + 1].strip()):
                break
            text_lines.append(lines[i].strip())
            i += 1

        cue_text = "\n".join(text_lines).strip()
        if cue_text:
            cues.append(Cue(start_sec=start, end_sec=end, text=cue_text))
    return cues


def render_webvtt(cues: list[Cue]) -> str:
    blocks = ["WEBVTT", ""]
    for cue in cues:
        blocks.append(f"{_format_timestamp(cue.start_sec)} --> {_format_timestamp(cue.end_sec)}")
        blocks.append(cue.text)
        blocks.append("")
    return "\n".join(blocks)


def srt_to_webvtt(text: str) -> str:
    cues = parse_srt(text)
    if not cues:
        raise ValueError("no subtitle cues found")
    return render_webvtt(cues)
