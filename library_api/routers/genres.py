from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from library_api import models, schemas
from library_api.database import get_db
from library_api.errors import HasDependentsError, NotFoundError
from library_api.pagination import PageParams, paginate

router = APIRouter(prefix="/genres", tags=["genres"])


def _get_genre(db: Session, genre_id: int) -> models.Genre:
    genre = db.query(models.Genre).filter(models.Genre.id == genre_id).first()
    if not genre:
        raise NotFoundError("Genre", genre_id)
    return genre


@router.get("", response_model=schemas.Page[schemas.Genre])
def list_genres(page: PageParams = Depends(), db: Session = Depends(get_db)):
    query = db.query(models.Genre).order_by(models.Genre.id)
    return paginate(query, page.page_number, page.page_size)


@router.get("/search", response_model=schemas.Page[schemas.Genre])
def search_genres(
    name: Optional[str] = Query(None),
    description: Optional[str] = Query(None),
    page: PageParams = Depends(),
    db: Session = Depends(get_db),
):
    """Case-insensitive substring search; all given filters must match."""
    query = db.query(models.Genre)

    if name:
        query = query.filter(models.Genre.name.ilike(f"%{name}%"))

    if description:
        query = query.filter(models.Genre.description.ilike(f"%{description}%"))

    return paginate(query.order_by(models.Genre.id), page.page_number, page.page_size)


@router.get("/{genre_id}", response_model=schemas.GenreWithBooks)
def get_genre(genre_id: int, db: Session = Depends(get_db)):
    return _get_genre(db, genre_id)


@router.post(
    "",
    response_model=schemas.Genre,
    status_code=status.HTTP_201_CREATED,
)
def create_genre(genre: schemas.GenreCreate, db: Session = Depends(get_db)):
    db_genre = models.Genre(**genre.model_dump())
    db.add(db_genre)
    db.commit()
    db.refresh(db_genre)
    return db_genre


@router.patch("/{genre_id}", response_model=schemas.Genre)
def update_genre(
    genre_id: int, genre_update: schemas.GenreUpdate, db: Session = Depends(get_db)
):
    db_genre = _get_genre(db, genre_id)

    for key, value in genre_update.model_dump(exclude_unset=True).items():
        setattr(db_genre, key, value)

    db.commit()
    db.refresh(db_genre)
    return db_genre


@router.delete("/{genre_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_genre(genre_id: int, db: Session = Depends(get_db)):
    db_genre = _get_genre(db, genre_id)

    if db_genre.books:
        raise HasDependentsError(
            f"Genre with id {genre_id} cannot be deleted because it has books"
        )

    db.delete(db_genre)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
