import re
from typing import Iterable, List, Optional


_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_PARAGRAPH_SPLIT = re.compile(r"\n{2,}")
_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")

_FRENCH_WORDS = re.compile(
    r"\b(le|la|les|des|une?|ce|cette|ces|dans|avec|pour|sur|son|ses|qui|que|dont|où|au|aux|du|de|et)\b",
    re.IGNORECASE,
)
_ENGLISH_WORDS = re.compile(
    r"\b(the|a|an|and|or|of|to|in|on|for|with|this|that|these|those|is|are|was|were|has|have|will|would)\b",
    re.IGNORECASE,
)

LANGUAGE_CODES = {"English": "en", "French": "fr"}


def count_words(text: str) -> int:
    return len(text.split())


def split_sentences(text: str) -> List[str]:
    flat = re.sub(r"\s+", " ", text or "").strip()
    if not flat:
        return []
    return [s.strip() for s in _SENTENCE_SPLIT.split(flat) if s.strip()]


def split_paragraphs(text: str) -> List[str]:
    """
    Paragraphs are blank-line separated blocks. Text without blank lines is
    grouped into pseudo-paragraphs of three sentences (or fewer when a
    sentence runs past 160 characters).
    """
    text = (text or "").strip()
    if not text:
        return []
    blocks = [b.strip() for b in _PARAGRAPH_SPLIT.split(text) if b.strip()]
    if len(blocks) > 1:
        return blocks

    paragraphs: List[str] = []
    buffer: List[str] = []
    for sentence in split_sentences(text):
        buffer.append(sentence)
        if len(buffer) >= 3 or len(sentence) > 160:
            paragraphs.append(" ".join(buffer))
            buffer = []
    if buffer:
        paragraphs.append(" ".join(buffer))
    return paragraphs or [text]


def enforce_char_limit(value: str, max_chars: int) -> str:
    """
    Trim to the last sentence boundary within ``max_chars``.

    Returns the text unchanged when no boundary falls in the last 40% of the
    budget; a sentence is never cut in half.
    """
    if len(value) <= max_chars:
        return value
    soft = value[:max_chars]
    boundaries = [m.start() for m in _SENTENCE_END.finditer(soft)]
    if boundaries and boundaries[-1] >= int(max_chars * 0.6):
        return soft[:boundaries[-1] + 1].strip()
    return value


def shorten_feed_name(feed_name: str) -> str:
    """'Pixels : all the news' -> 'Pixels'; 'Site | Tagline' -> 'Site'."""
    for pattern in (r"^([^:—–\-|]+?)\s*[:—–\-]", r"^(.*?)\s*\|\s*"):
        match = re.match(pattern, feed_name)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return feed_name[:40].strip() + "…" if len(feed_name) > 40 else feed_name


def dedupe_strings(values: Iterable[str]) -> List[str]:
    seen = set()
    result: List[str] = []
    for value in values:
        key = value.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def detect_language(text: str) -> Optional[str]:
    """English or French by function-word counts; None when undecided."""
    french = len(_FRENCH_WORDS.findall(text or ""))
    english = len(_ENGLISH_WORDS.findall(text or ""))
    if english > french and english >= 2:
        return "English"
    if french > english and french >= 2:
        return "French"
    return None


def display_title(original: str, translated: Optional[str]) -> str:
    """Translated title tagged with the original's language code."""
    if not translated:
        return original
    code = LANGUAGE_CODES.get(detect_language(original) or "")
    return f"{translated} [{code}]" if code else translated
