"""
SEO filename generation.

Builds a readable, filesystem and URL safe filename from a variant's title and
keywords: the first three title words followed by up to five short keywords,
Title Cased, space separated and bounded in length. The same function is used
by the archive builder and by single-file downloads so both paths agree.
"""
import hashlib
import re
from typing import Dict, Iterable, List, Optional

from .pipeline_config import config

MAX_TITLE_WORDS = 3
MAX_KEYWORDS = 5
MAX_KEYWORD_LENGTH = 25
MAX_EXTENSION_LENGTH = 10

_SEPARATORS = re.compile(r'[_-]+')
_UNSAFE = re.compile(r'[^a-zA-Z0-9\s]')
_WHITESPACE = re.compile(r'\s+')
_EXT_UNSAFE = re.compile(r'[^a-z0-9]')


def sanitize(text: str) -> str:
    """Reduce text to Title Cased ASCII words separated by single spaces"""
    if not text:
        return ''
    text = _SEPARATORS.sub(' ', text)
    text = _UNSAFE.sub('', text)
    text = _WHITESPACE.sub(' ', text).strip()
    return ' '.join(w[0].upper() + w[1:].lower() for w in text.split(' ') if w)


def normalize_extension(extension: str) -> str:
    return _EXT_UNSAFE.sub('', (extension or '').lower().lstrip('.'))


def get_file_extension(filename: str) -> str:
    if not filename or '.' not in filename:
        return ''
    return normalize_extension(filename.rsplit('.', 1)[-1])


def _keyword_parts(keywords: Iterable[str]) -> List[str]:
    short = [k for k in (keywords or []) if k and len(k) <= MAX_KEYWORD_LENGTH]
    # sorted() is stable, so equal-length keywords keep their input order
    short = sorted(short, key=len)
    parts = []
    for keyword in short:
        cleaned = sanitize(keyword)
        if cleaned and cleaned not in parts:
            parts.append(cleaned)
        if len(parts) == MAX_KEYWORDS:
            break
    return parts


def _fallback_base(title: str, keywords: Iterable[str], marketplace: str) -> str:
    digest = hashlib.sha1(
        '|'.join([title or '', ','.join(keywords or []), marketplace or '']).encode('utf-8')
    ).hexdigest()[:10]
    return f"Image {digest}"


def make_filename(title: str, keywords: Iterable[str], marketplace: str,
                  original_extension: str, max_length: Optional[int] = None) -> str:
    """
    Build the SEO filename for one variant.

    The result depends only on the arguments, uses only ``[A-Za-z0-9 ]`` plus
    the dot before the extension, never exceeds ``max_length`` characters and
    ends with the normalized ``original_extension``, cut to
    ``MAX_EXTENSION_LENGTH`` characters.
    """
    if max_length is None:
        max_length = config.max_filename_length
    keywords = list(keywords or [])
    # leave room for at least one base character and the dot
    ext_room = min(MAX_EXTENSION_LENGTH, max(0, max_length - 2))
    ext = normalize_extension(original_extension)[:ext_room]
    suffix = f".{ext}" if ext else ''
    budget = max(1, max_length - len(suffix))

    title_words = sanitize(title).split(' ')[:MAX_TITLE_WORDS] if title else []
    candidates = [w for w in title_words if w] + _keyword_parts(keywords)

    seen = set()
    parts = []
    for part in candidates:
        key = part.lower()
        if key in seen:
            continue
        seen.add(key)
        parts.append(part)

    base = ''
    for part in parts:
        candidate = f"{base} {part}" if base else part
        if len(candidate) > budget:
            if not base:
                base = part[:budget].rstrip()
            break
        base = candidate

    if not base:
        base = _fallback_base(title, keywords, marketplace)[:budget].rstrip()

    return f"{base}{suffix}"


def generate_all_filenames(variants, original_extension: str,
                           max_length: Optional[int] = None) -> Dict[str, str]:
    """Map each variant name to its generated filename"""
    return {
        v.name: make_filename(v.title or v.prompt or '', v.keywords, v.name,
                              original_extension, max_length)
        for v in variants
    }


def dedupe_filename(filename: str, taken: set, max_length: Optional[int] = None) -> str:
    """Append ' 2', ' 3', ... before the extension until the name is unused"""
    if max_length is None:
        max_length = config.max_filename_length
    if filename not in taken:
        taken.add(filename)
        return filename
    if '.' in filename:
        stem, ext = filename.rsplit('.', 1)
        ext = '.' + ext
    else:
        stem, ext = filename, ''
    n = 2
    while True:
        counter = f" {n}"
        room = max(1, max_length - len(ext) - len(counter))
        unique = f"{stem[:room].rstrip()}{counter}{ext}"
        if unique not in taken:
            break
        n += 1
    taken.add(unique)
    return unique
