"""Shared fixtures: an app on a throwaway SQLite file, seeded books and copies."""

from datetime import date

import pytest
from flask import template_rendered

from catalog import Book, BookInstance, create_app, db


@pytest.fixture
def app(tmp_path):
    """Fresh application per test, backed by its own database file."""
    app = create_app({
        "TESTING": True,
        "WTF_CSRF_ENABLED": False,
        "SECRET_KEY": "test-secret-key",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'catalog.db'}",
    })
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def captured_templates(app):
    """Record every (template, context) pair rendered during the test."""
    recorded = []

    def record(sender, template, context, **extra):
        recorded.append((template, context))

    template_rendered.connect(record, app)
    yield recorded
    template_rendered.disconnect(record, app)


@pytest.fixture
def books(app):
    """Two books, returned as a title -> id mapping."""
    with app.app_context():
        wind = Book(title="The Name of the Wind", isbn="9781473211896")
        apes = Book(title="Apes and Angels", isbn="9780765379528")
        db.session.add_all([wind, apes])
        db.session.commit()
        return {"wind": wind.id, "apes": apes.id}


@pytest.fixture
def bookinstance(app, books):
    """A loaned copy of The Name of the Wind; returns its id."""
    with app.app_context():
        copy = BookInstance(book_id=books["wind"], imprint="Gollancz, 2011.", status="Loaned",
                            due_back=date(2020, 6, 1))
        db.session.add(copy)
        db.session.commit()
        return copy.id
