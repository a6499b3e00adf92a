from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

Chair = Literal["1st", "2nd", "3rd", "4th", "Aux", "Solo"]
Transposition = Literal["C", "Bb", "Eb", "F", "G", "D", "A"]
Section = Literal[
    "Woodwinds", "Brass", "Percussion", "Strings", "Keyboard", "Vocals", "Score", "Other"
]
PartType = Literal["FULL_SCORE", "CONDUCTOR_SCORE", "CONDENSED_SCORE", "PART"]

SECTIONS: tuple[str, ...] = (
    "Woodwinds",
    "Brass",
    "Percussion",
    "Strings",
    "Keyboard",
    "Vocals",
    "Score",
    "Other",
)
TRANSPOSITIONS: tuple[str, ...] = ("C", "Bb", "Eb", "F", "G", "D", "A")
SCORE_FILE_TYPES: frozenset[str] = frozenset(
    {"FULL_SCORE", "CONDUCTOR_SCORE", "CONDENSED_SCORE"}
)


@dataclass(frozen=True, slots=True)
class NormalizedInstrument:
    instrument: str
    chair: Chair | None
    transposition: Transposition
    section: Section
    part_type: PartType


_CHAIR_PATTERNS: tuple[tuple[re.Pattern[str], Chair], ...] = (
    (re.compile(r"\b(1st|first|i\b|1)\b", re.IGNORECASE), "1st"),
    (re.compile(r"\b(2nd|second|ii\b|2)\b", re.IGNORECASE), "2nd"),
    (re.compile(r"\b(3rd|third|iii\b|3)\b", re.IGNORECASE), "3rd"),
    (re.compile(r"\b(4th|fourth|iv\b|4)\b", re.IGNORECASE), "4th"),
    (re.compile(r"\b(aux|auxiliary)\b", re.IGNORECASE), "Aux"),
    (re.compile(r"\b(solo)\b", re.IGNORECASE), "Solo"),
)

# "Clarinet in Bb II" style phrases are rewritten to "2nd Bb Clarinet" first.
_CHAIR_PHRASE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bclarinet\s+in\s+bb\s*(i{1,3}|iv|1|2|3|4)\b", re.IGNORECASE),
    re.compile(r"\bbb\s+clarinet\s*(i{1,3}|iv|1|2|3|4)\b", re.IGNORECASE),
    re.compile(r"\bclarinet\s*(i{1,3}|iv|1|2|3|4)\s+in\s+bb\b", re.IGNORECASE),
)

_ROMAN_CHAIRS = {
    "i": "1st",
    "1": "1st",
    "ii": "2nd",
    "2": "2nd",
    "iii": "3rd",
    "3": "3rd",
    "iv": "4th",
    "4": "4th",
}

# Order matters: specific names before the generic family match.
_INSTRUMENT_TABLE: tuple[tuple[str, str, Transposition, Section], ...] = (
    (r"piccolo", "Piccolo", "C", "Woodwinds"),
    (r"\beb[\s.-]?clarinet\b", "Eb Clarinet", "Eb", "Woodwinds"),
    (r"\bbass[\s.-]?clarinet\b", "Bass Clarinet", "Bb", "Woodwinds"),
    (r"\bclarinet\b", "Bb Clarinet", "Bb", "Woodwinds"),
    (r"\bflute\b", "Flute", "C", "Woodwinds"),
    (r"\boboe\b", "Oboe", "C", "Woodwinds"),
    (r"\benglish[\s.-]?horn\b", "English Horn", "F", "Woodwinds"),
    (r"\bcontra[\s.-]?bassoon\b", "Contrabassoon", "C", "Woodwinds"),
    (r"\bbassoon\b", "Bassoon", "C", "Woodwinds"),
    (r"\bsoprano[\s.-]?sax", "Soprano Saxophone", "Bb", "Woodwinds"),
    (r"\balto[\s.-]?sax", "Alto Saxophone", "Eb", "Woodwinds"),
    (r"\btenor[\s.-]?sax", "Tenor Saxophone", "Bb", "Woodwinds"),
    (r"\bbari(tone)?[\s.-]?sax", "Baritone Saxophone", "Eb", "Woodwinds"),
    (r"\bsax(ophone)?\b", "Saxophone", "C", "Woodwinds"),
    (r"\bflugelhorn\b", "Flugelhorn", "Bb", "Brass"),
    (r"\btrumpet\b", "Trumpet", "Bb", "Brass"),
    (r"\bcornet\b", "Cornet", "Bb", "Brass"),
    (r"\bbass[\s.-]?trombone\b", "Bass Trombone", "C", "Brass"),
    (r"\btrombone\b", "Trombone", "C", "Brass"),
    (r"\beuphonium\b", "Euphonium", "C", "Brass"),
    (r"\bhorn\b", "Horn", "F", "Brass"),
    (r"\btuba\b", "Tuba", "C", "Brass"),
    (r"\bbaritone\b", "Baritone", "C", "Brass"),
    (r"\btimpani\b", "Timpani", "C", "Percussion"),
    (r"\bsnare[\s.-]?drum\b", "Snare Drum", "C", "Percussion"),
    (r"\bbass[\s.-]?drum\b", "Bass Drum", "C", "Percussion"),
    (r"\bmarimba\b", "Marimba", "C", "Percussion"),
    (r"\bxylophone\b", "Xylophone", "C", "Percussion"),
    (r"\bvibraphone\b", "Vibraphone", "C", "Percussion"),
    (r"\bmallet\b", "Mallet Percussion", "C", "Percussion"),
    (r"\bpercussion\b", "Percussion", "C", "Percussion"),
    (r"\bviolin\b", "Violin", "C", "Strings"),
    (r"\bviola\b", "Viola", "C", "Strings"),
    (r"\bcello\b", "Cello", "C", "Strings"),
    (r"\bstring[\s.-]?bass\b", "String Bass", "C", "Strings"),
    (r"\bharp\b", "Harp", "C", "Strings"),
    (r"\bpiano\b", "Piano", "C", "Keyboard"),
    (r"\borgan\b", "Organ", "C", "Keyboard"),
    (r"\bconductor\b", "Conductor Score", "C", "Score"),
    (r"\bfull[\s.-]?score\b", "Full Score", "C", "Score"),
    (r"\bcondensed[\s.-]?score\b", "Condensed Score", "C", "Score"),
)
_INSTRUMENT_PATTERNS = tuple(
    (re.compile(pattern, re.IGNORECASE), base, transposition, section)
    for pattern, base, transposition, section in _INSTRUMENT_TABLE
)

_UNSAFE_FILENAME_RE = re.compile(r'[/\\:*?"<>|]')
_UNSAFE_SLUG_RE = re.compile(r"[^a-zA-Z0-9\-_ ]")
_WHITESPACE_RE = re.compile(r"\s+")
_UNDERSCORES_RE = re.compile(r"_{2,}")


def normalize_instrument_label(raw: str) -> NormalizedInstrument:
    label = _normalize_chair_phrases(raw or "")
    chair = _infer_chair(label)
    part_type = _infer_part_type(label)

    for pattern, base, transposition, section in _INSTRUMENT_PATTERNS:
        if pattern.search(label):
            instrument = f"{chair} {base}" if chair else base
            return NormalizedInstrument(
                instrument=instrument,
                chair=chair,
                transposition=transposition,
                section=section,
                part_type=part_type,
            )

    return NormalizedInstrument(
        instrument=label.strip() or "Unknown",
        chair=chair,
        transposition="C",
        section="Other",
        part_type=part_type,
    )


def build_part_display_name(piece_title: str, instrument: str) -> str:
    title = _WHITESPACE_RE.sub(" ", (piece_title or "").strip())
    return f"{title} {(instrument or '').strip()}".strip()


def build_part_filename(display_name: str) -> str:
    name = _UNSAFE_FILENAME_RE.sub("", display_name.strip())
    name = _WHITESPACE_RE.sub("_", name)
    name = _UNDERSCORES_RE.sub("_", name)
    return f"{name[:200] or 'part'}.pdf"


def build_part_storage_slug(display_name: str) -> str:
    slug = _UNSAFE_SLUG_RE.sub("", display_name.strip())
    slug = _WHITESPACE_RE.sub("_", slug)
    slug = _UNDERSCORES_RE.sub("_", slug)
    return slug[:150] or "part"


def _normalize_chair_phrases(raw: str) -> str:
    normalized = _WHITESPACE_RE.sub(" ", raw.strip())
    for pattern in _CHAIR_PHRASE_PATTERNS:
        normalized = pattern.sub(
            lambda match: f"{_ROMAN_CHAIRS.get(match.group(1).lower(), match.group(1))} Bb Clarinet",
            normalized,
        )
    return normalized


def _infer_chair(label: str) -> Chair | None:
    for pattern, chair in _CHAIR_PATTERNS:
        if pattern.search(label):
            return chair
    return None


def _infer_part_type(label: str) -> PartType:
    lower = label.lower()
    if re.search(r"\bconductor\b", lower):
        return "CONDUCTOR_SCORE"
    if re.search(r"\bcondensed\s+score\b", lower):
        return "CONDENSED_SCORE"
    if re.search(r"\b(full\s+score|score)\b", lower):
        return "FULL_SCORE"
    return "PART"
