"""Serbian Cyrillic → Latin → ASCII transliteration.

Street and settlement names come back from the portal in Cyrillic.
``cleanup`` turns them into upper-case Gaj's Latin (digraphs split into
two letters), which is the canonical form stored everywhere. ``query_key``
turns a search prefix into a filesystem-safe, collision-free cache key.
"""

import string

# Azbuka, the Serbian Cyrillic alphabet, in alphabetical order.
AZBUKA = "АБВГДЂЕЖЗИЈКЛЉМНЊОПРСТЋУФХЦЧЏШ"

_CYR_TO_LAT = {
    "А": "A", "Б": "B", "В": "V", "Г": "G", "Д": "D", "Ђ": "Đ",
    "Е": "E", "Ж": "Ž", "З": "Z", "И": "I", "Ј": "J", "К": "K",
    "Л": "L", "Љ": "LJ", "М": "M", "Н": "N", "Њ": "NJ", "О": "O",
    "П": "P", "Р": "R", "С": "S", "Т": "T", "Ћ": "Ć", "У": "U",
    "Ф": "F", "Х": "H", "Ц": "C", "Ч": "Č", "Џ": "DŽ", "Ш": "Š",
}

# Latin letters with diacritics (and the Unicode digraph code points some
# sources use) mapped to plain ASCII; mostly the "Serbian" column of the
# scientific transliteration table.
_LAT_TO_ASCII = {
    "Đ": "DJ", "Ž": "ZH", "Ć": "TJ", "Č": "TSH", "Š": "SH",
    "Ǆ": "DZH", "ǅ": "DZH", "Ǉ": "LJ", "ǈ": "LJ", "Ǌ": "NJ", "ǋ": "NJ",
}

_TO_LATIN = str.maketrans(
    {**_CYR_TO_LAT, **{k.lower(): v.lower() for k, v in _CYR_TO_LAT.items()}}
)
_DIGRAPHS = str.maketrans({
    "Ǆ": "DŽ", "ǅ": "Dž", "ǆ": "dž",
    "Ǉ": "LJ", "ǈ": "Lj", "ǉ": "lj",
    "Ǌ": "NJ", "ǋ": "Nj", "ǌ": "nj",
})

_KEY_SAFE = set(string.ascii_lowercase + string.digits)


def to_latin(text: str) -> str:
    """Transliterate Cyrillic to Latin, splitting Unicode digraphs."""
    return text.translate(_TO_LATIN).translate(_DIGRAPHS)


def cleanup(text: str) -> str:
    """Canonical form of a name: trimmed, Latin, upper-case."""
    return to_latin(text.strip()).upper()


def query_key(query: str) -> str:
    """Filesystem-safe cache key for a search prefix.

    Letters with a single-letter ASCII equivalent map to that letter.
    Letters that need several ASCII letters are written as ``_`` followed
    by their expansion (``Ч`` → ``_tsh``); the expansions form a prefix-free
    set, so e.g. ``Ч`` and ``ТШ`` (``t_sh``) never share a key. Anything
    else becomes ``~<hex code point>~``.
    """
    out = []
    for ch in query.strip():
        # Per letter, so that Љ (one letter) and ЛЈ (two letters) stay apart.
        lat = _CYR_TO_LAT.get(ch.upper(), ch.upper())
        if lat in _LAT_TO_ASCII or len(lat) > 1:
            out.append("_" + "".join(_LAT_TO_ASCII.get(c, c) for c in lat).lower())
        elif lat.lower() in _KEY_SAFE:
            out.append(lat.lower())
        else:
            out.append(f"~{ord(ch):x}~")
    return "".join(out)
