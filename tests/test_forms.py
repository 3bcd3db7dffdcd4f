from datetime import date

import pytest

from catalog import BookInstanceForm, sanitize_text


@pytest.mark.parametrize(
    "raw, cleaned",
    [
        ("  Gollancz  ", "Gollancz"),
        ("<script>alert(1)</script>Tor", "alert(1)Tor"),
        ("<i>Penguin</i> Classics", "Penguin Classics"),
        ("Smith & Sons", "Smith & Sons"),
        (None, None),
    ],
)
def test_sanitize_text(raw, cleaned):
    assert sanitize_text(raw) == cleaned


def submitted_form(app, data):
    with app.test_request_context("/catalog/bookinstance/create", method="POST", data=data):
        form = BookInstanceForm()
        form.validate()
        return form


def test_blank_due_back_is_optional(app, books):
    form = submitted_form(app, {"book": str(books["wind"]), "imprint": "Tor", "due_back": "  "})

    assert form.errors == {}
    assert form.due_back.data is None


def test_due_back_accepts_basic_iso_format(app, books):
    form = submitted_form(app, {"book": str(books["wind"]), "imprint": "Tor", "due_back": "20240305"})

    assert form.errors == {}
    assert form.due_back.data == date(2024, 3, 5)


def test_garbage_book_is_reported_as_missing(app, books):
    form = submitted_form(app, {"book": "abc", "imprint": "Tor"})

    assert form.errors == {"book": ["Book must be specified"]}


def test_every_failing_field_reports_once(app, books):
    form = submitted_form(app, {"book": "", "imprint": "", "due_back": "yesterday"})

    assert form.errors == {
        "book": ["Book must be specified"],
        "imprint": ["Imprint must be specified"],
        "due_back": ["Invalid date"],
    }
