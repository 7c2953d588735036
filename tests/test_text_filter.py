import settings
from tests.conftest import BrokenFilter
from text_filter import PassThroughFilter, ProfanityFilter, build_text_filter


def test_disabled_filter_passes_through(monkeypatch):
    monkeypatch.setattr(settings, "PROFANITY_FILTER", False)
    text_filter = build_text_filter()
    assert isinstance(text_filter, PassThroughFilter)
    assert text_filter.available is False
    assert text_filter.clean("shit happens") == "shit happens"


def test_enabled_filter(monkeypatch):
    monkeypatch.setattr(settings, "PROFANITY_FILTER", True)
    assert isinstance(build_text_filter(), ProfanityFilter)


def test_extra_words():
    assert ProfanityFilter(extra_words=["stinky"]).clean("a stinky bottle") == "a **** bottle"


def test_clean_never_raises():
    assert BrokenFilter().clean("anything") == "anything"
    assert BrokenFilter().clean("") == ""
    assert BrokenFilter().clean(None) is None


def test_apply_reports_whether_text_was_filtered():
    assert ProfanityFilter(extra_words=["stinky"]).apply("a stinky bottle") == ("a **** bottle", True)
    assert PassThroughFilter().apply("a stinky bottle") == ("a stinky bottle", False)
    assert BrokenFilter().apply("a stinky bottle") == ("a stinky bottle", False)
