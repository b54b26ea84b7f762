"""
Loan ledger: the lifecycle of a loan and the availability of books.

A loan is Active while return_date is NULL and Returned once it is set.
Returned is terminal for every mutation except delete. A book is lent to at
most one student at a time; the rule is checked here and enforced again by the
partial unique index on loans(book_id) WHERE return_date IS NULL, which
closes the gap between the check and the insert.

Anything that changes what a book can lend (a new loan, a new quantity, a
delete) runs inside locked_book(): the per-book lock serialises it within
this process, the row lock and the book's version column across processes.

Derived values (status, overdue, available quantity) are computed from the
stored columns at call time using the ledger's clock, never persisted.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime
from enum import Enum

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from library_api import models
from library_api.errors import (
    BookAlreadyLoanedError,
    BusinessRuleViolation,
    ConcurrencyConflictError,
    LoanAlreadyReturnedError,
    LoanFinalizedError,
    NoCopiesAvailableError,
    NotFoundError,
)
from library_api.repositories import BookRepository, LoanRepository, StudentRepository

logger = logging.getLogger(__name__)


class BookLocks:
    """
    One threading.Lock per book id, alive only while someone holds it.

    Locks sit in a WeakValueDictionary: once the last holder releases its
    reference the entry disappears, so the map never outgrows the number of
    books being worked on at the same moment.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def lock_for(self, book_id):
        with self._guard:
            lock = self._locks.get(book_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[book_id] = lock
            return lock

    def __contains__(self, book_id):
        return book_id in self._locks


_book_locks = BookLocks()


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"


def loan_status(loan: models.Loan, now: datetime) -> LoanStatus:
    """Classify a loan; exactly one status holds at any instant."""
    if loan.return_date is not None:
        return LoanStatus.RETURNED
    if loan.due_date < now:
        return LoanStatus.OVERDUE
    return LoanStatus.ACTIVE


def status_criterion(status: LoanStatus, now: datetime):
    """SQL equivalent of loan_status() for filtering queries."""
    if status is LoanStatus.RETURNED:
        return models.Loan.return_date.isnot(None)
    if status is LoanStatus.OVERDUE:
        return and_(models.Loan.return_date.is_(None), models.Loan.due_date < now)
    return and_(models.Loan.return_date.is_(None), models.Loan.due_date >= now)


class LoanLedger:
    """
    Loan operations bound to one database session.

    Every mutating operation validates all of its preconditions before
    touching the session and commits exactly once, so a failure never leaves
    a partial write behind.

    Args:
        db: Session for the current request
        clock: Callable returning the current time; loan dates, return dates,
            overdue checks and the is_late flag of the loans it hands out all
            read it
    """

    def __init__(self, db: Session, clock=datetime.now):
        self.db = db
        self.clock = clock
        self.books = BookRepository(db)
        self.students = StudentRepository(db)
        self.loans = LoanRepository(db)

    @contextmanager
    def locked_book(self, book_id: int):
        """
        Hold the book's lock and yield its row, re-read FOR UPDATE.

        Existence is checked before the lock is created, so ids that do not
        exist never reach the lock map. The caller commits before leaving the
        block.

        Raises:
            NotFoundError: the book does not exist (or vanished while waiting)
        """
        if not self.books.exists(book_id):
            raise NotFoundError("Book", book_id)

        with _book_locks.lock_for(book_id):
            book = self.books.get(book_id, for_update=True)
            if book is None:
                raise NotFoundError("Book", book_id)
            yield book

    def create_loan(
        self, book_id: int, student_id: int, due_date: datetime, loan_date=None
    ) -> models.Loan:
        """
        Lend a book to a student.

        Checks, in order: the book exists, the student exists, the book has
        no active loan, the book owns at least one copy.

        Raises:
            NotFoundError: book or student missing, including a student
                removed by another transaction before the insert committed
            BookAlreadyLoanedError: the book is already lent, including when a
                concurrent request wins the race and the unique index fires
            NoCopiesAvailableError: the book's quantity is 0
            ConcurrencyConflictError: the book row changed under us
        """
        with self.locked_book(book_id) as book:
            loan = self._insert_loan(book, student_id, due_date, loan_date)

        self.db.refresh(loan)
        logger.info(
            "Loan %s created: book %s lent to student %s until %s",
            loan.id,
            book_id,
            student_id,
            loan.due_date.isoformat(),
        )
        return self._stamp(loan)

    def check_quantity(self, book_id: int, quantity: int) -> None:
        """
        Refuse a quantity lower than the copies currently on loan.

        Call inside locked_book() so no loan can start between this count
        and the commit of the new quantity.
        """
        on_loan = self.loans.count_active_for_book(book_id)
        if quantity < on_loan:
            logger.warning(
                "Rejected quantity %s for book %s: %s on loan", quantity, book_id, on_loan
            )
            raise BusinessRuleViolation(
                f"Quantity cannot be lower than the {on_loan} copies currently on loan"
            )

    def return_loan(self, loan_id: int) -> models.Loan:
        """
        Record the return of a loan.

        Not idempotent: returning the same loan twice raises
        LoanAlreadyReturnedError on the second call.
        """
        loan = self._get_or_raise(loan_id)

        if loan.return_date is not None:
            logger.warning("Rejected return of loan %s: already returned", loan_id)
            raise LoanAlreadyReturnedError(loan_id)

        loan.return_date = self.clock()
        self._commit_change(loan_id)

        self.db.refresh(loan)
        logger.info("Loan %s returned at %s", loan_id, loan.return_date.isoformat())
        return self._stamp(loan)

    def update_due_date(self, loan_id: int, due_date: datetime) -> models.Loan:
        """Move the due date of an active loan; returned loans are final."""
        loan = self._get_or_raise(loan_id)

        if loan.return_date is not None:
            logger.warning("Rejected update of loan %s: finalized", loan_id)
            raise LoanFinalizedError(loan_id)

        loan.due_date = due_date
        self._commit_change(loan_id)

        self.db.refresh(loan)
        logger.info("Loan %s due date moved to %s", loan_id, due_date.isoformat())
        return self._stamp(loan)

    def delete_loan(self, loan_id: int) -> None:
        """
        Delete a loan in either state.

        Deleting an active loan cancels it and releases the copy, so the
        book can be lent again immediately.
        """
        loan = self._get_or_raise(loan_id)

        if loan.return_date is None:
            logger.warning(
                "Deleting active loan %s; copy of book %s is released",
                loan_id,
                loan.book_id,
            )

        self.loans.delete(loan)
        self._commit_change(loan_id)
        logger.info("Loan %s deleted", loan_id)

    def available_quantity(self, book_id: int) -> int:
        """Copies of the book not currently on loan, counted fresh."""
        book = self.books.get(book_id)
        if book is None:
            raise NotFoundError("Book", book_id)
        return book.quantity - self.loans.count_active_for_book(book_id)

    def get_loan(self, loan_id: int) -> models.Loan:
        return self._stamp(self._get_or_raise(loan_id))

    def status_of(self, loan: models.Loan) -> LoanStatus:
        return loan_status(loan, self.clock())

    def list_loans(self, page_number: int, page_size: int) -> dict:
        return self._stamp_page(self.loans.query([], page_number, page_size))

    def overdue_loans(self, page_number: int, page_size: int) -> dict:
        now = self.clock()
        criteria = [status_criterion(LoanStatus.OVERDUE, now)]
        return self._stamp_page(self.loans.query(criteria, page_number, page_size), now)

    def search_loans(
        self,
        book_title=None,
        student_name=None,
        status=None,
        page_number: int = 1,
        page_size: int = 10,
    ) -> dict:
        """
        Search loans by book title, student name and status.

        Title and name are case-insensitive substring matches. All given
        filters must match.
        """
        now = self.clock()
        criteria = []
        if book_title:
            criteria.append(models.Book.title.ilike(f"%{book_title}%"))
        if student_name:
            criteria.append(models.Student.name.ilike(f"%{student_name}%"))
        if status is not None:
            criteria.append(status_criterion(LoanStatus(status), now))
        return self._stamp_page(self.loans.query(criteria, page_number, page_size), now)

    def stats(self) -> dict:
        now = self.clock()
        return {
            "total_loans": self.loans.count(),
            "active_loans": self.loans.count(status_criterion(LoanStatus.ACTIVE, now)),
            "returned_loans": self.loans.count(
                status_criterion(LoanStatus.RETURNED, now)
            ),
            "overdue_loans": self.loans.count(
                status_criterion(LoanStatus.OVERDUE, now)
            ),
        }

    def _insert_loan(self, book, student_id, due_date, loan_date) -> models.Loan:
        book_id = book.id

        if not self.students.exists(student_id):
            raise NotFoundError("Student", student_id)

        if self.loans.exists_active_for_book(book_id):
            logger.warning("Rejected loan of book %s: already loaned", book_id)
            raise BookAlreadyLoanedError(book_id)

        if book.quantity < 1:
            logger.warning("Rejected loan of book %s: no copies owned", book_id)
            raise NoCopiesAvailableError(book_id)

        loan = models.Loan(
            book_id=book_id,
            student_id=student_id,
            loan_date=loan_date if loan_date is not None else self.clock(),
            due_date=due_date,
            return_date=None,
        )
        self.loans.create(loan)

        # Bump the book's version so a concurrent quantity change or delete
        # that read the old row fails with StaleDataError.
        flag_modified(book, "quantity")

        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if self.loans.exists_active_for_book(book_id):
                logger.warning(
                    "Rejected loan of book %s: concurrent loan committed first", book_id
                )
                raise BookAlreadyLoanedError(book_id) from exc
            if not self.students.exists(student_id):
                raise NotFoundError("Student", student_id) from exc
            raise
        except StaleDataError as exc:
            self.db.rollback()
            if not self.books.exists(book_id):
                raise NotFoundError("Book", book_id) from exc
            logger.warning("Concurrent modification of book %s", book_id)
            raise ConcurrencyConflictError("Book", book_id) from exc

        return loan

    def _stamp(self, loan: models.Loan, now=None) -> models.Loan:
        loan.as_of = now if now is not None else self.clock()
        return loan

    def _stamp_page(self, page: dict, now=None) -> dict:
        now = now if now is not None else self.clock()
        for loan in page["items"]:
            self._stamp(loan, now)
        return page

    def _get_or_raise(self, loan_id: int) -> models.Loan:
        loan = self.loans.get(loan_id)
        if loan is None:
            raise NotFoundError("Loan", loan_id)
        return loan

    def _commit_change(self, loan_id: int) -> None:
        """
        Commit an update or delete of a loan.

        A StaleDataError means another transaction changed or removed the row
        after we read it. The re-check tells the two apart: a vanished row is
        reported as NotFoundError, anything else as ConcurrencyConflictError.
        """
        try:
            self.db.commit()
        except StaleDataError as exc:
            self.db.rollback()
            if not self.loans.exists(loan_id):
                raise NotFoundError("Loan", loan_id) from exc
            logger.warning("Concurrent modification of loan %s", loan_id)
            raise ConcurrencyConflictError("Loan", loan_id) from exc
