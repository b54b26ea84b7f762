from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from library_api import models, schemas
from library_api.database import get_db
from library_api.errors import HasDependentsError, NotFoundError
from library_api.pagination import PageParams, paginate

router = APIRouter(prefix="/authors", tags=["authors"])


def _get_author(db: Session, author_id: int) -> models.Author:
    author = db.query(models.Author).filter(models.Author.id == author_id).first()
    if not author:
        raise NotFoundError("Author", author_id)
    return author


@router.get("", response_model=schemas.Page[schemas.Author])
def list_authors(page: PageParams = Depends(), db: Session = Depends(get_db)):
    """
    List authors, one page at a time.

    Internal Working:
    1. PageParams validates page_number >= 1 and 1 <= page_size <= MAX_PAGE_SIZE
    2. paginate() runs a COUNT plus an OFFSET/LIMIT select
    3. book_count is read from each author's books relationship
    """
    query = db.query(models.Author).order_by(models.Author.id)
    return paginate(query, page.page_number, page.page_size)


@router.get("/search", response_model=schemas.Page[schemas.Author])
def search_authors(
    name: Optional[str] = Query(None),
    page: PageParams = Depends(),
    db: Session = Depends(get_db),
):
    query = db.query(models.Author)

    if name:
        query = query.filter(models.Author.name.ilike(f"%{name}%"))

    return paginate(query.order_by(models.Author.id), page.page_number, page.page_size)


@router.get("/{author_id}", response_model=schemas.AuthorWithBooks)
def get_author(author_id: int, db: Session = Depends(get_db)):
    """
    Get a specific author by ID with their books.

    Raises:
        NotFoundError: 404 if author not found
    """
    return _get_author(db, author_id)


@router.post(
    "",
    response_model=schemas.Author,
    status_code=status.HTTP_201_CREATED,
)
def create_author(author: schemas.AuthorCreate, db: Session = Depends(get_db)):
    db_author = models.Author(**author.model_dump())
    db.add(db_author)
    db.commit()
    db.refresh(db_author)
    return db_author


@router.patch("/{author_id}", response_model=schemas.Author)
def update_author(
    author_id: int, author_update: schemas.AuthorUpdate, db: Session = Depends(get_db)
):
    """Partial update: only the fields present in the body are changed."""
    db_author = _get_author(db, author_id)

    for key, value in author_update.model_dump(exclude_unset=True).items():
        setattr(db_author, key, value)

    db.commit()
    db.refresh(db_author)
    return db_author


@router.delete("/{author_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_author(author_id: int, db: Session = Depends(get_db)):
    """
    Delete an author.

    Raises:
        NotFoundError: 404 if author not found
        HasDependentsError: 400 while the author still has books
    """
    db_author = _get_author(db, author_id)

    if db_author.books:
        raise HasDependentsError(
            f"Author with id {author_id} cannot be deleted because it has books"
        )

    db.delete(db_author)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
