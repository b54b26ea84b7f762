import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from library_api import models, schemas
from library_api.database import get_db
from library_api.errors import (
    BusinessRuleViolation,
    ConcurrencyConflictError,
    HasDependentsError,
    NotFoundError,
)
from library_api.ledger import LoanLedger
from library_api.pagination import PageParams, paginate
from library_api.repositories import BookRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/books", tags=["books"])


def _get_book(db: Session, book_id: int) -> models.Book:
    book = db.query(models.Book).filter(models.Book.id == book_id).first()
    if not book:
        raise NotFoundError("Book", book_id)
    return book


def _check_references(db: Session, author_id=None, genre_id=None):
    if author_id is not None:
        if not db.query(models.Author).filter(models.Author.id == author_id).first():
            raise NotFoundError("Author", author_id)

    if genre_id is not None:
        if not db.query(models.Genre).filter(models.Genre.id == genre_id).first():
            raise NotFoundError("Genre", genre_id)


def _check_isbn_free(db: Session, isbn: str):
    if db.query(models.Book).filter(models.Book.isbn == isbn).first():
        raise BusinessRuleViolation(f"Book with ISBN {isbn} already exists")


@router.get("", response_model=schemas.Page[schemas.Book])
def list_books(page: PageParams = Depends(), db: Session = Depends(get_db)):
    """
    List books with their available quantity.

    available_quantity is derived from each book's loans as they are read,
    so it always reflects the loans committed so far.
    """
    query = db.query(models.Book).order_by(models.Book.id)
    return paginate(query, page.page_number, page.page_size)


@router.get("/search", response_model=schemas.Page[schemas.Book])
def search_books(
    title: Optional[str] = Query(None),
    author: Optional[str] = Query(None),
    genre: Optional[str] = Query(None),
    page: PageParams = Depends(),
    db: Session = Depends(get_db),
):
    """
    Search books by title, author name and genre name.

    Each filter is a case-insensitive substring match and all given filters
    must match.
    """
    query = db.query(models.Book).join(models.Book.author).join(models.Book.genre)

    if title:
        query = query.filter(models.Book.title.ilike(f"%{title}%"))

    if author:
        query = query.filter(models.Author.name.ilike(f"%{author}%"))

    if genre:
        query = query.filter(models.Genre.name.ilike(f"%{genre}%"))

    return paginate(query.order_by(models.Book.id), page.page_number, page.page_size)


@router.get("/{book_id}", response_model=schemas.BookWithLoans)
def get_book(book_id: int, db: Session = Depends(get_db)):
    """
    Get a specific book by ID with its loan history.

    Raises:
        NotFoundError: 404 if book not found
    """
    return _get_book(db, book_id)


@router.post(
    "",
    response_model=schemas.Book,
    status_code=status.HTTP_201_CREATED,
)
def create_book(book: schemas.BookCreate, db: Session = Depends(get_db)):
    """
    Create a new book.

    Business Logic:
    - Books must reference an existing author and genre
    - ISBN must be unique across all books

    Raises:
        NotFoundError: 404 if author or genre not found
        BusinessRuleViolation: 400 if the ISBN exists
    """
    _check_references(db, book.author_id, book.genre_id)
    _check_isbn_free(db, book.isbn)

    db_book = models.Book(**book.model_dump())
    db.add(db_book)
    db.commit()
    db.refresh(db_book)
    return db_book


@router.patch("/{book_id}", response_model=schemas.Book)
def update_book(
    book_id: int, book_update: schemas.BookUpdate, db: Session = Depends(get_db)
):
    """
    Update a book's information.

    Business Logic:
    - Changed author/genre references must exist
    - A changed ISBN must still be unique
    - quantity may not drop below the copies currently on loan, which keeps
      available_quantity non-negative; the count and the write happen under
      the book's lock, so no loan can start in between

    Raises:
        NotFoundError: 404 if the book (or a new author/genre) is not found
        BusinessRuleViolation: 400 on ISBN conflict or a too-low quantity
        ConcurrencyConflictError: 409 if the book changed meanwhile
    """
    ledger = LoanLedger(db)
    update_data = book_update.model_dump(exclude_unset=True)

    with ledger.locked_book(book_id) as db_book:
        _check_references(db, update_data.get("author_id"), update_data.get("genre_id"))

        if "isbn" in update_data and update_data["isbn"] != db_book.isbn:
            _check_isbn_free(db, update_data["isbn"])

        if "quantity" in update_data:
            ledger.check_quantity(book_id, update_data["quantity"])

        for key, value in update_data.items():
            setattr(db_book, key, value)

        _commit_book_change(db, book_id)

    db.refresh(db_book)
    return db_book


@router.delete("/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_book(book_id: int, db: Session = Depends(get_db)):
    """
    Delete a book and its returned loans.

    The active-loan check and the delete run under the book's lock. A loan
    created elsewhere in between bumps the book's version or trips the
    foreign key, and the delete is refused.

    Raises:
        NotFoundError: 404 if book not found
        HasDependentsError: 400 while a copy is on loan
        ConcurrencyConflictError: 409 if the book changed meanwhile
    """
    with LoanLedger(db).locked_book(book_id) as db_book:
        if db_book.active_loans_count:
            raise HasDependentsError(
                f"Book with id {book_id} cannot be deleted because it has active loans"
            )

        db.delete(db_book)
        try:
            _commit_book_change(db, book_id)
        except IntegrityError as exc:
            db.rollback()
            logger.warning("Rejected delete of book %s: loan added meanwhile", book_id)
            raise HasDependentsError(
                f"Book with id {book_id} cannot be deleted because it has active loans"
            ) from exc

    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _commit_book_change(db: Session, book_id: int):
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        if not BookRepository(db).exists(book_id):
            raise NotFoundError("Book", book_id) from exc
        logger.warning("Concurrent modification of book %s", book_id)
        raise ConcurrencyConflictError("Book", book_id) from exc
