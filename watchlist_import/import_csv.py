"""CSV parsing for IMDb and Letterboxd watchlist exports.

Both exports are parsed line by line: a quoted field never spans lines, a
malformed line yields whatever fields could be read, and rows that cannot
identify a title are dropped without raising.
"""

import csv
from dataclasses import dataclass
from html import unescape
import re

IMPORT_SOURCES = ("imdb", "letterboxd")

IMDB_ID_RE = re.compile(r"^tt\d{5,10}$", flags=re.IGNORECASE)
IMDB_URL_ID_RE = re.compile(r"/title/(?P<imdb_id>tt\d{5,10})", flags=re.IGNORECASE)

IMDB_COLUMNS = {
    "position": ("position", "pos"),
    "const": ("const", "imdb id", "imdbid", "tconst"),
    "created": ("created", "date added"),
    "modified": ("modified", "date modified"),
    "description": ("description",),
    "title": ("title", "name"),
    "url": ("url",),
    "title_type": ("title type", "titletype", "type"),
    "imdb_rating": ("imdb rating", "your rating", "rating"),
    "runtime_mins": ("runtime (mins)", "runtime", "runtimemins"),
    "year": ("year", "release year"),
    "genres": ("genres", "genre"),
    "num_votes": ("num votes", "numvotes", "votes"),
    "release_date": ("release date", "releasedate"),
    "directors": ("directors", "director"),
}

LETTERBOXD_COLUMNS = {
    "title": ("title", "name", "film name"),
    "year": ("year", "release year"),
    "letterboxd_uri": ("letterboxd uri", "uri", "url"),
    "rating": ("rating",),
    "watched_date": ("watched date", "date"),
    "review": ("review",),
}


class UnsupportedSourceError(ValueError):
    def __init__(self, source: str):
        self.source = source
        super().__init__(f"Unsupported import source: {source!r}")


@dataclass(frozen=True)
class ImdbItem:
    const: str
    title: str
    year: int | None
    title_type: str = ""
    position: str = ""
    created: str = ""
    modified: str = ""
    description: str = ""
    url: str = ""
    imdb_rating: str = ""
    runtime_mins: str = ""
    genres: str = ""
    num_votes: str = ""
    release_date: str = ""
    directors: str = ""

    @property
    def external_id(self) -> str | None:
        return self.const if IMDB_ID_RE.fullmatch(self.const or "") else None


@dataclass(frozen=True)
class LetterboxdItem:
    title: str
    year: int | None
    letterboxd_uri: str = ""
    rating: str = ""
    watched_date: str = ""
    review: str = ""

    @property
    def external_id(self) -> str | None:
        return None


RawImportRecord = ImdbItem | LetterboxdItem


def _coerce_year(value: str | int | None) -> int | None:
    if isinstance(value, int):
        return value if 1870 <= value <= 2200 else None
    raw = str(value or "").strip()
    if not raw:
        return None
    match = re.search(r"(\d{4})", raw)
    if not match:
        return None
    year = int(match.group(1))
    return year if 1870 <= year <= 2200 else None


def _split_title_year(value: str) -> tuple[str, int | None]:
    text = unescape(str(value or "")).strip()
    if not text:
        return "", None
    for pattern in (
        r"^(?P<title>.+?),\s*(?P<year>\d{4})$",
        r"^(?P<title>.+?)\s+\((?P<year>\d{4})\)$",
    ):
        match = re.match(pattern, text)
        if not match:
            continue
        title = (match.group("title") or "").strip()
        year = _coerce_year(match.group("year"))
        if title:
            return title, year
    return text, None


def _decode_csv_bytes(raw: bytes) -> str:
    for encoding in ("utf-8-sig", "utf-8"):
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    # latin-1 maps every byte, so this never fails
    return raw.decode("latin-1")


def _split_lines(content: str | bytes) -> list[str]:
    text = _decode_csv_bytes(content) if isinstance(content, (bytes, bytearray)) else str(content or "")
    if text.startswith("\ufeff"):
        text = text[1:]
    return [line.rstrip("\r") for line in text.split("\n")]


def parse_csv_line(line: str) -> list[str]:
    try:
        row = next(csv.reader([line], skipinitialspace=True), [])
    except csv.Error:
        return []
    return [field.strip() for field in row]


def _column_indexes(header_line: str, columns: dict[str, tuple[str, ...]]) -> dict[str, int]:
    headers = [header.lower() for header in parse_csv_line(header_line)]
    indexes: dict[str, int] = {}
    for field_name, aliases in columns.items():
        indexes[field_name] = -1
        for alias in aliases:
            if alias in headers:
                indexes[field_name] = headers.index(alias)
                break
    return indexes


def _data_rows(content: str | bytes, columns: dict[str, tuple[str, ...]]):
    lines = _split_lines(content)
    if len(lines) < 2:
        return
    indexes = _column_indexes(lines[0], columns)
    for line in lines[1:]:
        if not line.strip():
            continue
        fields = parse_csv_line(line)

        def value(field_name: str, fields: list[str] = fields) -> str:
            index = indexes[field_name]
            return fields[index] if 0 <= index < len(fields) else ""

        yield value


def _imdb_id_from(const: str, url: str) -> str:
    const = (const or "").strip().lower()
    if IMDB_ID_RE.fullmatch(const):
        return const
    match = IMDB_URL_ID_RE.search(url or "")
    if match:
        return match.group("imdb_id").lower()
    return const


def parse_imdb_csv(content: str | bytes) -> list[ImdbItem]:
    items: list[ImdbItem] = []
    for value in _data_rows(content, IMDB_COLUMNS):
        title = value("title")
        const = _imdb_id_from(value("const"), value("url"))
        if not title and not const:
            continue
        items.append(
            ImdbItem(
                const=const,
                title=title,
                year=_coerce_year(value("year")),
                title_type=value("title_type"),
                position=value("position"),
                created=value("created"),
                modified=value("modified"),
                description=value("description"),
                url=value("url"),
                imdb_rating=value("imdb_rating"),
                runtime_mins=value("runtime_mins"),
                genres=value("genres"),
                num_votes=value("num_votes"),
                release_date=value("release_date"),
                directors=value("directors"),
            )
        )
    return items


def parse_letterboxd_csv(content: str | bytes) -> list[LetterboxdItem]:
    items: list[LetterboxdItem] = []
    for value in _data_rows(content, LETTERBOXD_COLUMNS):
        raw_title = value("title")
        if not raw_title:
            continue
        year = _coerce_year(value("year"))
        title = unescape(raw_title).strip()
        if year is None:
            title, year = _split_title_year(raw_title)
        if not title:
            continue
        items.append(
            LetterboxdItem(
                title=title,
                year=year,
                letterboxd_uri=value("letterboxd_uri"),
                rating=value("rating"),
                watched_date=value("watched_date"),
                review=value("review"),
            )
        )
    return items


def parse_import_csv(source: str, content: str | bytes) -> list[RawImportRecord]:
    if source == "imdb":
        return parse_imdb_csv(content)
    if source == "letterboxd":
        return parse_letterboxd_csv(content)
    raise UnsupportedSourceError(source)


def count_lines(content: str | bytes) -> int:
    return len(_split_lines(content))
