from typing import Optional

from sqlalchemy.orm import Session

from library_api import models
from library_api.pagination import paginate


class BookRepository:
    def __init__(self, db: Session):
        self.db = db

    def exists(self, book_id: int) -> bool:
        query = self.db.query(models.Book).filter(models.Book.id == book_id)
        return self.db.query(query.exists()).scalar()

    def get(self, book_id: int, for_update: bool = False) -> Optional[models.Book]:
        """
        Fetch a book by id.

        for_update adds SELECT ... FOR UPDATE so that concurrent lenders of
        the same book queue on the row lock, and refreshes a copy already in
        the session. SQLite ignores the clause; the per-book lock and the
        book's version column cover that case.
        """
        query = self.db.query(models.Book).filter(models.Book.id == book_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()


class StudentRepository:
    def __init__(self, db: Session):
        self.db = db

    def exists(self, student_id: int) -> bool:
        query = self.db.query(models.Student).filter(models.Student.id == student_id)
        return self.db.query(query.exists()).scalar()


class LoanRepository:
    """Data access for loans; the ledger decides when to commit."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, loan: models.Loan) -> models.Loan:
        self.db.add(loan)
        return loan

    def get(self, loan_id: int) -> Optional[models.Loan]:
        return self.db.query(models.Loan).filter(models.Loan.id == loan_id).first()

    def exists(self, loan_id: int) -> bool:
        query = self.db.query(models.Loan).filter(models.Loan.id == loan_id)
        return self.db.query(query.exists()).scalar()

    def delete(self, loan: models.Loan) -> None:
        self.db.delete(loan)

    def _active_for_book(self, book_id: int):
        return self.db.query(models.Loan).filter(
            models.Loan.book_id == book_id,
            models.Loan.return_date.is_(None),
        )

    def exists_active_for_book(self, book_id: int) -> bool:
        return self.db.query(self._active_for_book(book_id).exists()).scalar()

    def count_active_for_book(self, book_id: int) -> int:
        return self._active_for_book(book_id).count()

    def count(self, *criteria) -> int:
        return self.db.query(models.Loan).filter(*criteria).count()

    def query(self, criteria, page_number: int, page_size: int) -> dict:
        """
        Page through loans matching all criteria.

        Book and student are joined so criteria may filter on their columns
        (e.g. a title search).
        """
        query = (
            self.db.query(models.Loan)
            .join(models.Loan.book)
            .join(models.Loan.student)
            .filter(*criteria)
            .order_by(models.Loan.id)
        )
        return paginate(query, page_number, page_size)
