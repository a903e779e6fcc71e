"""Name and city normalization for fuzzy institution matching.

French institution names carry a lot of noise ("Centre Hospitalier
Universitaire de ...", "Clinique Saint-..."); both sides are reduced to their
distinctive tokens before they are compared.
"""
import re
import unicodedata
from typing import Optional

_NAME_STOPWORDS = re.compile(
    r"\b(clinique|centre|hopital|hospital|hospitalier|universitaire|chu|ch|"
    r"cabinet|maison|sainte|saint|ste|st)\b"
)
_ARTICLES = re.compile(r"\b(de|du|la|le|les|des|d)\b")
_CITY_STOPWORDS = re.compile(r"\b(sur|sous|les|en|de|du|la|le)\b")
_APOSTROPHES = re.compile(r"['’]")
_PUNCTUATION = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _base(value: str) -> str:
    text = strip_accents(value).lower()
    text = _APOSTROPHES.sub("", text)
    return text.replace("-", " ")


def _finish(text: str) -> str:
    text = _PUNCTUATION.sub("", text)
    return _SPACES.sub(" ", text).strip()


def normalize_name(name: Optional[str]) -> str:
    """'Centre Hospitalier Universitaire de Lyon' -> 'lyon'."""
    if not name:
        return ""
    text = _base(name)
    text = _NAME_STOPWORDS.sub(" ", text)
    text = _ARTICLES.sub(" ", text)
    return _finish(text)


def normalize_city(city: Optional[str]) -> str:
    """'Lyon-sur-Rhône' -> 'lyonrhone'."""
    if not city:
        return ""
    text = _base(city)
    text = _CITY_STOPWORDS.sub(" ", text)
    return _finish(text).replace(" ", "")


def normalize_zip(zip_code: Optional[str]) -> str:
    if not zip_code:
        return ""
    return re.sub(r"\s+", "", str(zip_code))
