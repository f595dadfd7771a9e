import re
from typing import Optional

from bs4 import BeautifulSoup


_WHITESPACE_RE = re.compile(r"[\s\u00a0\u200b]+", re.UNICODE)


def collapse_whitespace(value: Optional[str]) -> str:
    if value is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip()


def strip_html(value) -> str:
    """Plain text content of a value that may carry HTML markup or entities."""

    if value is None or value == "":
        return ""
    text = str(value)
    if "<" not in text and "&" not in text:
        return collapse_whitespace(text)
    soup = BeautifulSoup(text, "html.parser")
    return collapse_whitespace(soup.get_text())


def normalize_owner_value(value) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float, str)):
        return strip_html(value)
    return ""
