from __future__ import annotations

from typing import Any, Iterable

AUTO = "auto"
DEFAULT_INPUT_LANG = "en"
DEFAULT_OUTPUT_LANG = "ja"
LANG_CODE_MAP = {
    "ja": "ja",
    "jp": "ja",
    "japanese": "ja",
    "日本語": "ja",
    "en": "en",
    "eng": "en",
    "english": "en",
}
LANG_NAME_MAP = {
    "en": "English",
    "ja": "Japanese",
}
SUPPORTED_LANGS = {"ja", "en"}


class LanguageDetectionError(ValueError):
    pass


def normalize_lang(value: str | None) -> str | None:
    """Map a user supplied language to a supported code.

    Returns None for None and for ``auto``, which both mean "detect".
    """
    if value is None:
        return None
    key = value.strip().lower()
    if key == AUTO:
        return None
    normalized = LANG_CODE_MAP.get(key)
    if normalized is None:
        raise ValueError(
            f"Unsupported language '{value}'. Supported: {sorted(SUPPORTED_LANGS)}"
        )
    return normalized


def lang_name(code: str) -> str:
    return LANG_NAME_MAP.get(code.strip().lower(), code)


def opposite_lang(code: str) -> str:
    return "ja" if code == "en" else "en"


def detect_lang(text: str) -> str:
    from fast_langdetect import detect

    results = detect(text, k=3, model="auto")
    if isinstance(results, dict):
        results_iter: Iterable[dict[str, Any]] = [results]
    else:
        results_iter = results

    for item in results_iter:
        lang = item.get("lang")
        if isinstance(lang, str) and lang in SUPPORTED_LANGS:
            return lang

    raise LanguageDetectionError(
        f"Could not detect language as English or Japanese: {text[:20]!r}"
    )


def resolve_pair(
    text: str, input_lang: str | None, output_lang: str | None
) -> tuple[str, str]:
    """Fill in whichever side of the language pair is missing.

    ``input_lang`` and ``output_lang`` must already be normalized.
    """
    if input_lang is None and output_lang is None:
        input_lang = detect_lang(text)
        return input_lang, opposite_lang(input_lang)
    if input_lang is None:
        return opposite_lang(output_lang), output_lang
    if output_lang is None:
        return input_lang, opposite_lang(input_lang)
    return input_lang, output_lang
