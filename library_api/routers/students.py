import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from library_api import models, schemas
from library_api.database import get_db
from library_api.errors import HasDependentsError, NotFoundError
from library_api.pagination import PageParams, paginate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/students", tags=["students"])


def _get_student(db: Session, student_id: int) -> models.Student:
    student = db.query(models.Student).filter(models.Student.id == student_id).first()
    if not student:
        raise NotFoundError("Student", student_id)
    return student


@router.get("", response_model=schemas.Page[schemas.Student])
def list_students(page: PageParams = Depends(), db: Session = Depends(get_db)):
    query = db.query(models.Student).order_by(models.Student.id)
    return paginate(query, page.page_number, page.page_size)


@router.get("/search", response_model=schemas.Page[schemas.Student])
def search_students(
    name: Optional[str] = Query(None),
    email: Optional[str] = Query(None),
    registration_number: Optional[str] = Query(None),
    page: PageParams = Depends(),
    db: Session = Depends(get_db),
):
    query = db.query(models.Student)

    if name:
        query = query.filter(models.Student.name.ilike(f"%{name}%"))

    if email:
        query = query.filter(models.Student.email.ilike(f"%{email}%"))

    if registration_number:
        query = query.filter(
            models.Student.registration_number.ilike(f"%{registration_number}%")
        )

    return paginate(
        query.order_by(models.Student.id), page.page_number, page.page_size
    )


@router.get("/{student_id}", response_model=schemas.StudentWithLoans)
def get_student(student_id: int, db: Session = Depends(get_db)):
    """Get a student with the full loan history."""
    return _get_student(db, student_id)


@router.post(
    "",
    response_model=schemas.Student,
    status_code=status.HTTP_201_CREATED,
)
def create_student(student: schemas.StudentCreate, db: Session = Depends(get_db)):
    db_student = models.Student(**student.model_dump())
    db.add(db_student)
    db.commit()
    db.refresh(db_student)
    return db_student


@router.patch("/{student_id}", response_model=schemas.Student)
def update_student(
    student_id: int,
    student_update: schemas.StudentUpdate,
    db: Session = Depends(get_db),
):
    db_student = _get_student(db, student_id)

    for key, value in student_update.model_dump(exclude_unset=True).items():
        setattr(db_student, key, value)

    db.commit()
    db.refresh(db_student)
    return db_student


@router.delete("/{student_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_student(student_id: int, db: Session = Depends(get_db)):
    """
    Delete a student and their returned loans.

    The student row is read FOR UPDATE. A loan committed after the check
    still holds a foreign key to the student, so the delete is refused.

    Raises:
        NotFoundError: 404 if student not found
        HasDependentsError: 400 while the student holds a book
    """
    db_student = (
        db.query(models.Student)
        .filter(models.Student.id == student_id)
        .with_for_update()
        .first()
    )
    if not db_student:
        raise NotFoundError("Student", student_id)

    if db_student.active_loans_count:
        raise HasDependentsError(
            f"Student with id {student_id} cannot be deleted because they have active loans"
        )

    db.delete(db_student)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Rejected delete of student %s: loan added meanwhile", student_id)
        raise HasDependentsError(
            f"Student with id {student_id} cannot be deleted because they have active loans"
        ) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
