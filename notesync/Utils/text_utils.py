# text_utils.py
# Description: Plain-text projections used for note metadata and previews
#
# Imports
import math
import re
#
# Third-Party Imports
from bs4 import BeautifulSoup
#
########################################################################################################################
#
# Functions:

WORDS_PER_MINUTE = 200
PREVIEW_LENGTH = 100

_WHITESPACE_RE = re.compile(r'\s+')


def get_word_count(text: str) -> int:
    return len([w for w in _WHITESPACE_RE.split(text.strip()) if w])


def get_char_count(text: str) -> int:
    return len(text)


def get_reading_time(word_count: int) -> int:
    """Estimated reading time in whole minutes, rounded up."""
    return math.ceil(word_count / WORDS_PER_MINUTE)


def strip_html(markup: str) -> str:
    """
    Text content of an HTML fragment, with whitespace runs collapsed to single spaces.

    Entities are decoded and non-breaking spaces count as whitespace. This is a
    projection for counting and search, not a sanitizer.
    """
    if not markup:
        return ""
    soup = BeautifulSoup(markup, 'html.parser')
    text = soup.get_text(separator=' ')
    return _WHITESPACE_RE.sub(' ', text).strip()


def truncate(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[:length].strip() + '...'


def extract_first_line(text: str) -> str:
    return truncate(text.strip().split('\n')[0], PREVIEW_LENGTH)

#
# End of text_utils.py
########################################################################################################################
