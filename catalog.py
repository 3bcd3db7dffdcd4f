"""
catalog.py

Library catalog web application for managing book instances (physical copies
of catalog books):
- HTML UI rendered server-side from templates/
- Create / read / update / delete / list for book copies
- Read-only book list and detail pages (redirect targets)
- CSRF tokens and server-side validation with Flask-WTF
- Structured logging with structlog
"""

import html
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from typing import Optional

import bleach
import structlog
from dateutil.parser import isoparse
from flask import (
    Blueprint, Flask, abort, current_app, flash, redirect, render_template, request, url_for
)
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import FlaskForm, CSRFProtect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload, load_only, selectinload
from wtforms import DateField, SelectField, StringField, SubmitField
from wtforms.validators import DataRequired, Optional as OptionalValidator, ValidationError

# --- Config ---
BASE_DIR = os.path.abspath(os.path.dirname(__file__))

STATUS_CHOICES = ['Available', 'Maintenance', 'Loaned', 'Reserved']
DEFAULT_STATUS = 'Maintenance'
# Primary keys are stored as signed 64-bit integers
MAX_ID = 2 ** 63 - 1

db = SQLAlchemy()
csrf = CSRFProtect()
logger = structlog.get_logger(__name__)

catalog = Blueprint('catalog', __name__, url_prefix='/catalog')


def configure_logging(app: Flask) -> None:
    level = app.config['LOG_LEVEL'].upper()
    logging.basicConfig(format='%(message)s', level=level)
    logging.getLogger().setLevel(level)

    renderer = structlog.dev.ConsoleRenderer() if app.debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt='iso'),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# --- Models ---
class Book(db.Model):
    __tablename__ = 'books'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(250), nullable=False, index=True)
    isbn = db.Column(db.String(20))
    summary = db.Column(db.Text)

    instances = db.relationship('BookInstance', back_populates='book', cascade="all, delete-orphan")

    @property
    def url(self):
        return url_for('catalog.book_detail', book_id=self.id)


class BookInstance(db.Model):
    __tablename__ = 'book_instances'
    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey('books.id'), nullable=False, index=True)
    imprint = db.Column(db.String(250), nullable=False)
    status = db.Column(db.Enum(*STATUS_CHOICES, name='bookinstance_status'), nullable=False,
                       default=DEFAULT_STATUS)
    due_back = db.Column(db.Date)

    book = db.relationship('Book', back_populates='instances')

    @property
    def url(self):
        return url_for('catalog.bookinstance_detail', bookinstance_id=self.id)

    @property
    def due_back_formatted(self):
        return self.due_back.strftime('%b %d, %Y') if self.due_back else ''

    def to_dict(self):
        return {
            "id": self.id,
            "book": self.book_id,
            "imprint": self.imprint,
            "status": self.status,
            "due_back": self.due_back,
        }


# --- Forms ---
def sanitize_text(value):
    """Trim the value and strip any markup from it.

    bleach entity-encodes what it keeps; the text is unescaped again so it is
    stored as plain text and escaped only once, by the templates.
    """
    if value is None:
        return value
    return html.unescape(bleach.clean(value.strip(), tags=set(), strip=True)).strip()


def strip_value(value):
    return value.strip() if isinstance(value, str) else value


class IsoDateField(DateField):
    """Date input that accepts any ISO-8601 date or datetime string."""

    def process_formdata(self, valuelist):
        if not valuelist or not valuelist[0].strip():
            self.data = None
            return
        try:
            self.data = isoparse(valuelist[0].strip()).date()
        except ValueError:
            self.data = None
            raise ValueError(self.gettext('Invalid date'))


class BookInstanceForm(FlaskForm):
    book = SelectField('Book', coerce=int, choices=[], validate_choice=False,
                       validators=[DataRequired(message='Book must be specified')])
    imprint = StringField('Imprint', filters=[sanitize_text],
                          validators=[DataRequired(message='Imprint must be specified')])
    status = SelectField('Status', choices=STATUS_CHOICES, default=DEFAULT_STATUS, filters=[strip_value])
    due_back = IsoDateField('Date when book available', validators=[OptionalValidator()])
    submit = SubmitField('Submit')

    def validate_book(form, field):
        if not is_valid_id(field.data) or db.session.get(Book, field.data) is None:
            raise ValidationError('Book not found')


# --- Helper utilities ---
def form_errors(form):
    return [message for messages in form.errors.values() for message in messages]


def sorted_books():
    return Book.query.options(load_only(Book.title)).order_by(Book.title.asc()).all()


def is_valid_id(value) -> bool:
    return isinstance(value, int) and 0 < value <= MAX_ID


def find_bookinstance(bookinstance_id: int, *options) -> Optional["BookInstance"]:
    if not is_valid_id(bookinstance_id):
        return None
    return db.session.get(BookInstance, bookinstance_id, options=options)


def get_bookinstance_or_404(bookinstance_id: int, *options) -> "BookInstance":
    bookinstance = find_bookinstance(bookinstance_id, *options)
    if bookinstance is None:
        logger.info('bookinstance_not_found', bookinstance_id=bookinstance_id)
        abort(404, description='Book copy not found')
    return bookinstance


def fetch_concurrently(**loaders):
    """Run independent loaders in parallel and collect their results by name.

    Each loader runs in its own application context and therefore with its own
    database session; objects it returns are detached. The first loader to
    raise, in completion order, aborts the fetch and its exception is re-raised.
    """
    app = current_app._get_current_object()

    def run(loader):
        with app.app_context():
            return loader()

    with ThreadPoolExecutor(max_workers=max(len(loaders), 1)) as executor:
        futures = {name: executor.submit(run, loader) for name, loader in loaders.items()}
        for future in as_completed(futures.values()):
            error = future.exception()
            if error is not None:
                for other in futures.values():
                    other.cancel()
                raise error
    return {name: future.result() for name, future in futures.items()}


def render_bookinstance_form(form: BookInstanceForm, title: str, book_list=None,
                             bookinstance: Optional[BookInstance] = None):
    if book_list is None:
        book_list = sorted_books()
    form.book.choices = [(book.id, book.title) for book in book_list]
    return render_template('bookinstance_form.html', title=title, form=form, book_list=book_list,
                           bookinstance=bookinstance, errors=form_errors(form))


def bookinstance_from_form(form: BookInstanceForm, bookinstance_id: Optional[int] = None) -> BookInstance:
    return BookInstance(
        id=bookinstance_id,
        book_id=form.book.data,
        imprint=form.imprint.data,
        status=form.status.data or DEFAULT_STATUS,
        due_back=form.due_back.data,
    )


# --- Views: books (read-only) ---
@catalog.route('/books')
def book_list():
    return render_template('book_list.html', title='Book List', book_list=sorted_books())


@catalog.route('/book/<int:book_id>')
def book_detail(book_id):
    book = None
    if is_valid_id(book_id):
        book = db.session.get(Book, book_id, options=[selectinload(Book.instances)])
    if book is None:
        abort(404, description='Book not found')
    return render_template('book_detail.html', title=book.title, book=book)


# --- Views: book instances ---
@catalog.route('/bookinstances')
def bookinstance_list():
    bookinstances = (BookInstance.query.options(joinedload(BookInstance.book))
                     .order_by(BookInstance.id).all())
    return render_template('bookinstance_list.html', title='Book Instance List',
                           bookinstance_list=bookinstances)


@catalog.route('/bookinstance/<int:bookinstance_id>')
def bookinstance_detail(bookinstance_id):
    bookinstance = get_bookinstance_or_404(bookinstance_id, joinedload(BookInstance.book))
    return render_template('bookinstance_detail.html', title='Book', bookinstance=bookinstance)


@catalog.route('/bookinstance/create', methods=['GET'])
def bookinstance_create_get():
    return render_bookinstance_form(BookInstanceForm(), 'Create BookInstance')


@catalog.route('/bookinstance/create', methods=['POST'])
def bookinstance_create_post():
    form = BookInstanceForm()
    bookinstance = bookinstance_from_form(form)

    if not form.validate_on_submit():
        flash("Please fix errors in the form", "error")
        return render_bookinstance_form(form, 'Create BookInstance', bookinstance=bookinstance)

    db.session.add(bookinstance)
    db.session.commit()
    logger.info('bookinstance_created', bookinstance_id=bookinstance.id, book_id=bookinstance.book_id)
    flash("Book copy created", "success")
    return redirect(bookinstance.url)


@catalog.route('/bookinstance/<int:bookinstance_id>/delete', methods=['GET'])
def bookinstance_delete_get(bookinstance_id):
    bookinstance = find_bookinstance(bookinstance_id, joinedload(BookInstance.book))
    if bookinstance is None:
        # The copy is gone and we can't tell which book it belonged to
        return redirect(url_for('catalog.book_list'))
    return render_template('bookinstance_delete.html', title='Delete Book Copy', bookinstance=bookinstance)


@catalog.route('/bookinstance/<int:bookinstance_id>/delete', methods=['POST'])
def bookinstance_delete_post(bookinstance_id):
    target_id = request.form.get('bookinstanceid', bookinstance_id, type=int)
    bookinstance = get_bookinstance_or_404(target_id, joinedload(BookInstance.book))
    book_url = bookinstance.book.url
    book_id = bookinstance.book_id

    db.session.delete(bookinstance)
    db.session.commit()
    logger.info('bookinstance_deleted', bookinstance_id=target_id, book_id=book_id)
    flash("Book copy deleted", "success")
    return redirect(book_url)


@catalog.route('/bookinstance/<int:bookinstance_id>/update', methods=['GET'])
def bookinstance_update_get(bookinstance_id):
    results = fetch_concurrently(
        bookinstance=lambda: find_bookinstance(bookinstance_id),
        book_list=sorted_books,
    )
    bookinstance = results['bookinstance']
    if bookinstance is None:
        logger.info('bookinstance_not_found', bookinstance_id=bookinstance_id)
        abort(404, description='Book copy not found')

    form = BookInstanceForm(data=bookinstance.to_dict())
    return render_bookinstance_form(form, 'Update BookInstance', book_list=results['book_list'],
                                    bookinstance=bookinstance)


@catalog.route('/bookinstance/<int:bookinstance_id>/update', methods=['POST'])
def bookinstance_update_post(bookinstance_id):
    form = BookInstanceForm()
    # Keep the existing id so the row is updated instead of a new one being inserted
    bookinstance = bookinstance_from_form(form, bookinstance_id)

    if not form.validate_on_submit():
        flash("Please fix errors in the form", "error")
        return render_bookinstance_form(form, 'Update BookInstance', bookinstance=bookinstance)

    get_bookinstance_or_404(bookinstance_id)
    updated = db.session.merge(bookinstance)
    db.session.commit()
    logger.info('bookinstance_updated', bookinstance_id=updated.id, book_id=updated.book_id)
    flash("Book copy updated", "success")
    return redirect(updated.url)


# --- Error handlers ---
def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(404)
    def not_found(e):
        return render_template('error.html', title='Not Found', message=e.description, status=404), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return render_template('error.html', title='Method Not Allowed', message=e.description,
                               status=405), 405

    @app.errorhandler(SQLAlchemyError)
    def storage_error(e):
        db.session.rollback()
        logger.exception('storage_error', path=request.path, method=request.method)
        return render_template('error.html', title='Error',
                               message="The catalog database could not be reached.", status=500), 500


# --- Sample data ---
SAMPLE_BOOKS = [
    ("The Name of the Wind", "9781473211896", [
        ("London Gollancz, 2014.", "Available", None),
        ("Gollancz, 2011.", "Loaned", date(2020, 6, 1)),
    ]),
    ("The Wise Man's Fear", "9788401352836", [
        ("New York Tom Doherty Associates, 2016.", "Available", None),
    ]),
    ("Apes and Angels", "9780765379528", [
        ("New York, NY Tom Doherty Associates, LLC, 2015.", "Maintenance", None),
        ("New York, NY Tom Doherty Associates, LLC, 2015.", "Reserved", None),
    ]),
    ("Death Wave", "9780765379504", []),
]


def seed_sample_data():
    for title, isbn, copies in SAMPLE_BOOKS:
        book = Book(title=title, isbn=isbn)
        book.instances = [BookInstance(imprint=imprint, status=status, due_back=due_back)
                          for imprint, status, due_back in copies]
        db.session.add(book)
    db.session.commit()


# --- App factory ---
def create_app(test_config=None):
    app = Flask(__name__, static_folder="static", template_folder="templates")
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('CATALOG_SECRET') or "dev-secret-change-me",
        SQLALCHEMY_DATABASE_URI=os.environ.get('DATABASE_URL') or f"sqlite:///{os.path.join(BASE_DIR, 'catalog.db')}",
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        LOG_LEVEL=os.environ.get('LOG_LEVEL') or "INFO",
    )
    if test_config is not None:
        app.config.from_mapping(test_config)

    configure_logging(app)
    db.init_app(app)
    csrf.init_app(app)
    app.register_blueprint(catalog)
    register_error_handlers(app)

    @app.route('/')
    def index():
        return redirect(url_for('catalog.bookinstance_list'))

    @app.cli.command("init-db")
    def init_db():
        """Create the tables and add sample books and copies (for dev only)."""
        db.create_all()
        if Book.query.first() is None:
            seed_sample_data()
            print("Initialized DB with sample data.")
        else:
            print("DB already initialized.")

    return app


if __name__ == '__main__':
    create_app().run(debug=True)
