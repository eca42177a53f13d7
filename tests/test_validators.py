import pytest

from utils.validators import EmailValidator, TextValidator


@pytest.mark.parametrize("raw,expected", [
    ("  The   Hobbit ", "The Hobbit"),
    ("Line\nbreak", "Line break"),
    ("   ", None),
    ("", None),
    (None, None),
])
def test_normalize_text(raw, expected):
    assert TextValidator.normalize(raw) == expected


@pytest.mark.parametrize("email,valid", [
    ("student@campus.edu", True),
    ("  Mixed.Case@Campus.EDU ", True),
    ("no-at-sign.edu", False),
    ("two@@campus.edu", False),
    ("missing@tld", False),
    ("", False),
    (None, False),
])
def test_email_validation(email, valid):
    assert EmailValidator.is_valid_email(email) is valid


def test_normalize_email():
    assert EmailValidator.normalize_email("  Alice@Campus.EDU ") == "alice@campus.edu"
    assert EmailValidator.normalize_email(None) == ""


def test_normalize_can_keep_inner_whitespace():
    kept = TextValidator.normalize("  First line\nSecond line  ", collapse_whitespace=False)
    assert kept == "First line\nSecond line"
