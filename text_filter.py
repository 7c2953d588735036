"""Profanity filtering for user-submitted review text."""

from typing import Optional, Tuple

from better_profanity import Profanity

import settings
from log import get_logger

logger = get_logger(__name__)


class TextFilter:
    """Base filter. `clean` never raises: a broken filter lets text through unchanged."""

    available = True

    def filter(self, text: str) -> str:
        raise NotImplementedError

    def apply(self, text: Optional[str]) -> Tuple[Optional[str], bool]:
        """Return the cleaned text and whether it really went through the filter."""
        if not text:
            return text, self.available
        try:
            cleaned = self.filter(text)
        except Exception as e:
            logger.warning("text_filter_failed", filter=type(self).__name__, error=str(e))
            return text, False
        return cleaned, self.available

    def clean(self, text: Optional[str]) -> Optional[str]:
        return self.apply(text)[0]


class PassThroughFilter(TextFilter):
    """Used when filtering is switched off."""

    available = False

    def filter(self, text: str) -> str:
        return text


class ProfanityFilter(TextFilter):
    def __init__(self, extra_words=None):
        self._profanity = Profanity()
        self._profanity.load_censor_words()
        if extra_words:
            self._profanity.add_censor_words(list(extra_words))

    def filter(self, text: str) -> str:
        return self._profanity.censor(text)


def build_text_filter() -> TextFilter:
    if not settings.PROFANITY_FILTER:
        logger.info("text_filter_disabled")
        return PassThroughFilter()
    try:
        return ProfanityFilter()
    except Exception as e:
        logger.warning("text_filter_unavailable", error=str(e))
        return PassThroughFilter()
