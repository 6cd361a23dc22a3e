"""Scripture reference parsing, ordering and range handling."""

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from vreflect.libs.key_path import look_up_key, set_key

RANGE_MARKER = "<range>"

BOOK_ORDER = [
    ("Genesis", "GEN"),
    ("Exodus", "EXO"),
    ("Leviticus", "LEV"),
    ("Numbers", "NUM"),
    ("Deuteronomy", "DEU"),
    ("Joshua", "JOS"),
    ("Judges", "JDG"),
    ("Ruth", "RUT"),
    ("1Samuel", "1SA", "1 Samuel"),
    ("2Samuel", "2SA", "2 Samuel"),
    ("1Kings", "1KI", "1 Kings"),
    ("2Kings", "2KI", "2 Kings"),
    ("1Chronicles", "1CH", "1 Chronicles"),
    ("2Chronicles", "2CH", "2 Chronicles"),
    ("Ezra", "EZR"),
    ("Nehemiah", "NEH"),
    ("Esther", "EST"),
    ("Job", "JOB"),
    ("Psalms", "PSA", "Psalm"),
    ("Proverbs", "PRO"),
    ("Ecclesiastes", "ECC"),
    ("SongofSolomon", "SNG", "Song of Solomon"),
    ("Isaiah", "ISA"),
    ("Jeremiah", "JER"),
    ("Lamentations", "LAM"),
    ("Ezekiel", "EZK"),
    ("Daniel", "DAN"),
    ("Hosea", "HOS"),
    ("Joel", "JOL"),
    ("Amos", "AMO"),
    ("Obadiah", "OBA"),
    ("Jonah", "JON"),
    ("Micah", "MIC"),
    ("Nahum", "NAM"),
    ("Habakkuk", "HAB"),
    ("Zephaniah", "ZEP"),
    ("Haggai", "HAG"),
    ("Zechariah", "ZEC"),
    ("Malachi", "MAL"),
    ("Matthew", "MAT"),
    ("Mark", "MRK"),
    ("Luke", "LUK"),
    ("John", "JHN"),
    ("Acts", "ACT"),
    ("Romans", "ROM"),
    ("1Corinthians", "1CO", "1 Corinthians"),
    ("2Corinthians", "2CO", "2 Corinthians"),
    ("Galatians", "GAL"),
    ("Ephesians", "EPH"),
    ("Philippians", "PHP"),
    ("Colossians", "COL"),
    ("1Thessalonians", "1TH", "1 Thessalonians"),
    ("2Thessalonians", "2TH", "2 Thessalonians"),
    ("1Timothy", "1TI", "1 Timothy"),
    ("2Timothy", "2TI", "2 Timothy"),
    ("Titus", "TIT"),
    ("Philemon", "PHM"),
    ("Hebrews", "HEB"),
    ("James", "JAS"),
    ("1Peter", "1PE", "1 Peter"),
    ("2Peter", "2PE", "2 Peter"),
    ("1John", "1JN", "1 John"),
    ("2John", "2JN", "2 John"),
    ("3John", "3JN", "3 John"),
    ("Jude", "JUD"),
    ("Revelation", "REV"),
]

BOOK_INDEX: Dict[str, int] = {
    name: index for index, names in enumerate(BOOK_ORDER) for name in names
}

_CHAPTER_VERSE = re.compile(r"^(\d+)(?::(\d+)(?:-(\d+))?)?$")


def split_ref(reference: str) -> Tuple[str, Optional[int], Optional[Union[int, str]]]:
    """
    Split a reference into book, chapter and verse.

    ``"GEN 1:2"`` gives ``("GEN", 1, 2)``; a verse range stays a string, so
    ``"GEN 1:2-3"`` gives ``("GEN", 1, "2-3")``. A reference without a space is
    treated as a bare book name.
    """
    if " " not in reference:
        return reference, None, None

    book, chapter_verse = reference.rsplit(" ", 1)
    if ":" not in chapter_verse:
        try:
            return book, int(chapter_verse), None
        except ValueError:
            return reference, None, None

    chapter_str, verse_str = chapter_verse.split(":", 1)
    try:
        chapter = int(chapter_str)
    except ValueError:
        return reference, None, None
    if "-" in verse_str:
        return book, chapter, verse_str
    try:
        return book, chapter, int(verse_str)
    except ValueError:
        return book, chapter, verse_str


def split_ref_range(reference: str) -> Tuple[str, Optional[int], Optional[int], Optional[int]]:
    """Split a reference into book, chapter, start verse and end verse."""
    book, chapter, verse = split_ref(reference)

    if isinstance(verse, str):
        if "-" in verse:
            start, end = verse.split("-", 1)
            try:
                return book, chapter, int(start), int(end)
            except ValueError:
                return book, chapter, None, None
        return book, chapter, None, None

    return book, chapter, verse, verse


def reference_sort_key(reference: Any) -> tuple:
    """
    Sort key giving canonical book, chapter, verse order.

    References that don't parse, or whose book is unknown, sort after all
    canonical ones in plain lexical order.
    """
    if not isinstance(reference, str):
        return (1, str(reference))

    match = _CHAPTER_VERSE.match(reference.rsplit(" ", 1)[-1]) if " " in reference else None
    if match:
        book = reference.rsplit(" ", 1)[0]
        if book in BOOK_INDEX:
            chapter = int(match.group(1))
            verse = int(match.group(2)) if match.group(2) else 0
            return (0, BOOK_INDEX[book], chapter, verse, reference)

    return (1, reference)


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(a) + 1))
    for i, b_char in enumerate(b, start=1):
        current = [i]
        for j, a_char in enumerate(a, start=1):
            if a_char == b_char:
                current.append(previous[j - 1])
            else:
                current.append(min(previous[j - 1], current[j - 1], previous[j]) + 1)
        previous = current
    return previous[-1]


def find_closest_reference(target: str, references: Sequence[Any]) -> Tuple[Optional[str], float]:
    """Return the reference closest to target by case-insensitive edit distance."""
    best_reference = None
    best_distance = float("inf")
    for reference in references:
        if not isinstance(reference, str) or not reference:
            continue
        distance = levenshtein(target.lower(), reference.lower())
        if distance < best_distance:
            best_reference = reference
            best_distance = distance
    return best_reference, best_distance


def normalize_ranges(records: List[Dict[str, Any]], reference_key: Sequence[str],
                     translation_key: Sequence[str], source_key: Sequence[str]) -> List[Dict[str, Any]]:
    """
    Merge records marked as ranges into the record before them.

    A record whose source or translation is ``<range>`` is folded into the
    previous record, producing a combined ``BOOK C:a-b`` reference and the
    joined source and translation text. Records must already be in order.

    Raises:
        ValueError: If a range would cross a book or chapter boundary
    """
    normalized: List[Dict[str, Any]] = []

    for record in records:
        this_translation = (look_up_key(record, translation_key, "", none_is_valid=False) or "").strip()
        this_source = (look_up_key(record, source_key, "", none_is_valid=False) or "").strip()

        if RANGE_MARKER in (this_translation, this_source) and normalized:
            last = normalized.pop()

            last_book, last_chapter, last_start, _ = split_ref_range(look_up_key(last, reference_key))
            this_book, this_chapter, _, this_end = split_ref_range(look_up_key(record, reference_key))

            if last_book != this_book:
                raise ValueError("Ranges across books not supported.")
            if last_chapter != this_chapter:
                raise ValueError("Ranges across chapters not supported.")

            reference = f"{last_book} {last_chapter}:{last_start}-{this_end}"

            last_source = look_up_key(last, source_key, "", none_is_valid=False) or ""
            if this_source == RANGE_MARKER:
                source = last_source
            else:
                source = f"{last_source}\n{this_source}".strip()

            last_translation = look_up_key(last, translation_key, "", none_is_valid=False) or ""
            if this_translation == RANGE_MARKER:
                translation = last_translation
            else:
                translation = f"{last_translation}\n{this_translation}".strip()

            combined: Dict[str, Any] = {}
            set_key(combined, reference_key, reference)
            if source:
                set_key(combined, source_key, source)
            if translation:
                set_key(combined, translation_key, translation)
            normalized.append(combined)
        else:
            normalized.append(record)

    return normalized


def get_overridden_references(records: Sequence[Dict[str, Any]], reference_key: Sequence[str],
                              override_key: Optional[Sequence[str]]) -> Dict[str, str]:
    """
    Find references that a following record has absorbed into a verse range.

    Returns a map from each overridden reference to the reference that now
    carries its text. Chains are collapsed so every entry points at the end.
    """
    overridden: Dict[str, str] = {}
    if override_key:
        last_reference = None
        for record in records:
            reference = look_up_key(record, reference_key)
            if last_reference and look_up_key(record, override_key):
                overridden[last_reference] = reference
            last_reference = reference

    collapsed: Dict[str, str] = {}
    for key, value in overridden.items():
        seen = {key}
        while value in overridden and value not in seen:
            seen.add(value)
            value = overridden[value]
        collapsed[key] = value
    return collapsed
