"""
Language utilities for the voice assistant.

The assistant speaks and listens in a closed set of Indian locales. Locale tags
are bound when capture starts and when an utterance is spoken, so everything
that reaches the speech engines goes through `normalize_language_tag` first.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Optional


@dataclass(frozen=True)
class Language:
    """A supported capture/synthesis locale."""

    tag: str
    name: str
    native_name: str


SUPPORTED_LANGUAGES: tuple[Language, ...] = (
    Language("en-IN", "English", "English"),
    Language("hi-IN", "Hindi", "हिंदी"),
    Language("ta-IN", "Tamil", "தமிழ்"),
    Language("te-IN", "Telugu", "తెలుగు"),
    Language("bn-IN", "Bengali", "বাংলা"),
    Language("mr-IN", "Marathi", "मराठी"),
    Language("gu-IN", "Gujarati", "ગુજરાતી"),
    Language("kn-IN", "Kannada", "ಕನ್ನಡ"),
)

DEFAULT_LANGUAGE = "en-IN"

_BY_TAG: dict[str, Language] = {lang.tag.lower(): lang for lang in SUPPORTED_LANGUAGES}

_TAG_PATTERN = re.compile(r"^([a-z]{2,3})(?:[-_]([a-z]{2}))?$")


def normalize_language_tag(tag: Optional[str]) -> Optional[str]:
    """
    Normalize a locale tag into its canonical form.

    Accepts case and separator variants ("HI_in", "hi-in") and bare language
    codes ("hi"). Returns None for anything outside the supported set.
    """
    if not tag:
        return None

    match = _TAG_PATTERN.match(tag.strip().lower())
    if not match:
        return None

    lang, region = match.group(1), match.group(2) or "in"
    found = _BY_TAG.get(f"{lang}-{region}")
    return found.tag if found else None


def is_supported_language(tag: Optional[str]) -> bool:
    return normalize_language_tag(tag) is not None


def resolve_language(tag: Optional[str], default: str = DEFAULT_LANGUAGE) -> str:
    """Return the canonical tag for `tag`, or `default` when unsupported."""
    return normalize_language_tag(tag) or default


def get_language(tag: str) -> Language:
    """
    Look up a supported language.

    Raises:
        ValueError: If the tag is not in the supported set
    """
    canonical = normalize_language_tag(tag)
    if canonical is None:
        raise ValueError(f"Unsupported language: {tag}")
    return _BY_TAG[canonical.lower()]


def list_languages() -> list[dict[str, str]]:
    return [
        {"code": lang.tag, "name": lang.name, "native_name": lang.native_name}
        for lang in SUPPORTED_LANGUAGES
    ]
