import random
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from conftest import TestingSessionLocal
from library_api import models, schemas
from library_api.errors import (
    BookAlreadyLoanedError,
    BusinessRuleViolation,
    ConcurrencyConflictError,
    LoanAlreadyReturnedError,
    LoanFinalizedError,
    NoCopiesAvailableError,
    NotFoundError,
)
from library_api.ledger import LoanLedger, LoanStatus, _book_locks, loan_status


@pytest.fixture
def ledger(db, clock):
    return LoanLedger(db, clock=clock)


@pytest.fixture
def catalog(db):
    """A book with one copy and two students, committed to the test database."""
    author = models.Author(name="Graciliano Ramos")
    genre = models.Genre(name="Regionalism")
    db.add_all([author, genre])
    db.flush()

    book = models.Book(
        title="Vidas Secas",
        isbn="9788501067",
        publication_year=1938,
        quantity=1,
        author_id=author.id,
        genre_id=genre.id,
    )
    x = models.Student(name="Student X", registration_number="X")
    y = models.Student(name="Student Y", registration_number="Y")
    db.add_all([book, x, y])
    db.commit()
    return {"book": book.id, "x": x.id, "y": y.id}


def answer_once(value, check):
    """Replacement lookup that returns value on its first call, then delegates."""
    pending = [value]

    def lookup(entity_id):
        if pending:
            return pending.pop()
        return check(entity_id)

    return lookup


def test_lend_return_lend_again(ledger, catalog, clock):
    """
    Book with quantity 1: lend to X, refuse Y, return, then lend to Y.
    """
    due = clock() + timedelta(days=7)

    loan = ledger.create_loan(catalog["book"], catalog["x"], due_date=due)
    assert loan.loan_date == clock()
    assert loan.return_date is None
    assert ledger.available_quantity(catalog["book"]) == 0

    with pytest.raises(BookAlreadyLoanedError):
        ledger.create_loan(catalog["book"], catalog["y"], due_date=due)

    returned = ledger.return_loan(loan.id)
    assert returned.return_date == clock()
    assert ledger.available_quantity(catalog["book"]) == 1

    second = ledger.create_loan(catalog["book"], catalog["y"], due_date=due)
    assert second.student.name == "Student Y"
    assert second.book.title == "Vidas Secas"


def test_create_loan_precondition_order(ledger, catalog, clock):
    due = clock() + timedelta(days=7)

    with pytest.raises(NotFoundError) as excinfo:
        ledger.create_loan(999, 999, due_date=due)
    assert excinfo.value.entity == "Book"

    with pytest.raises(NotFoundError) as excinfo:
        ledger.create_loan(catalog["book"], 999, due_date=due)
    assert excinfo.value.entity == "Student"


def test_create_loan_without_copies(ledger, catalog, db, clock):
    book = db.get(models.Book, catalog["book"])
    book.quantity = 0
    db.commit()

    with pytest.raises(NoCopiesAvailableError):
        ledger.create_loan(catalog["book"], catalog["x"], due_date=clock())

    assert db.query(models.Loan).count() == 0


def test_return_is_not_idempotent(ledger, catalog, clock):
    loan = ledger.create_loan(
        catalog["book"], catalog["x"], due_date=clock() + timedelta(days=7)
    )
    clock.advance(days=2)
    ledger.return_loan(loan.id)
    first_return = loan.return_date

    clock.advance(days=1)
    with pytest.raises(LoanAlreadyReturnedError) as excinfo:
        ledger.return_loan(loan.id)
    assert isinstance(excinfo.value, BusinessRuleViolation)
    assert ledger.get_loan(loan.id).return_date == first_return


def test_returned_loan_is_immutable(ledger, catalog, clock):
    due = clock() + timedelta(days=7)
    loan = ledger.create_loan(catalog["book"], catalog["x"], due_date=due)
    ledger.return_loan(loan.id)

    with pytest.raises(LoanFinalizedError) as excinfo:
        ledger.update_due_date(loan.id, due + timedelta(days=7))
    assert isinstance(excinfo.value, BusinessRuleViolation)
    assert ledger.get_loan(loan.id).due_date == due


def test_update_due_date(ledger, catalog, clock):
    loan = ledger.create_loan(catalog["book"], catalog["x"], due_date=clock())
    new_due = clock() + timedelta(days=14)

    updated = ledger.update_due_date(loan.id, new_due)
    assert updated.due_date == new_due


def test_missing_loan_operations_raise_not_found(ledger, catalog):
    with pytest.raises(NotFoundError):
        ledger.return_loan(404)
    with pytest.raises(NotFoundError):
        ledger.update_due_date(404, datetime(2030, 1, 1))
    with pytest.raises(NotFoundError):
        ledger.delete_loan(404)
    with pytest.raises(NotFoundError):
        ledger.get_loan(404)
    with pytest.raises(NotFoundError):
        ledger.available_quantity(404)


def test_delete_active_loan_releases_copy(ledger, catalog, clock):
    loan = ledger.create_loan(catalog["book"], catalog["x"], due_date=clock())
    assert ledger.available_quantity(catalog["book"]) == 0

    ledger.delete_loan(loan.id)

    assert ledger.available_quantity(catalog["book"]) == 1
    ledger.create_loan(catalog["book"], catalog["y"], due_date=clock())


def test_overdue_is_evaluated_at_query_time(ledger, catalog, clock):
    loan = ledger.create_loan(
        catalog["book"], catalog["x"], due_date=clock() + timedelta(days=1)
    )
    assert ledger.status_of(loan) is LoanStatus.ACTIVE
    assert ledger.overdue_loans(1, 10)["total_count"] == 0

    clock.advance(days=1)
    assert ledger.status_of(loan) is LoanStatus.ACTIVE

    clock.advance(seconds=1)
    assert ledger.status_of(loan) is LoanStatus.OVERDUE
    assert ledger.overdue_loans(1, 10)["total_count"] == 1
    assert ledger.stats()["overdue_loans"] == 1


def test_status_partition_is_exhaustive_and_disjoint(ledger, db, catalog, clock):
    """
    At several instants, every loan lands in exactly one status filter and
    the filters agree with loan_status().
    """
    author_id = db.get(models.Book, catalog["book"]).author_id
    genre_id = db.get(models.Book, catalog["book"]).genre_id
    books = []
    for n in range(6):
        book = models.Book(
            title=f"Book {n}",
            isbn=f"100000000{n}",
            quantity=1,
            author_id=author_id,
            genre_id=genre_id,
        )
        db.add(book)
        books.append(book)
    db.commit()

    loans = []
    for n, book in enumerate(books):
        loans.append(
            ledger.create_loan(
                book.id, catalog["x"], due_date=clock() + timedelta(days=n - 2)
            )
        )
    ledger.return_loan(loans[0].id)
    ledger.return_loan(loans[4].id)

    for _ in range(4):
        found = {}
        for status in LoanStatus:
            page = ledger.search_loans(status=status, page_size=50)
            found[status] = {loan.id for loan in page["items"]}

        all_ids = {loan.id for loan in loans}
        assert set().union(*found.values()) == all_ids
        assert sum(len(ids) for ids in found.values()) == len(all_ids)
        for loan in loans:
            assert loan.id in found[loan_status(loan, clock())]

        stats = ledger.stats()
        assert (
            stats["active_loans"] + stats["returned_loans"] + stats["overdue_loans"]
            == stats["total_loans"]
        )
        clock.advance(days=1)


def test_available_quantity_stays_within_bounds(ledger, db, catalog, clock):
    """
    A random sequence of lend/return attempts never pushes availability
    outside [0, quantity].
    """
    book = db.get(models.Book, catalog["book"])
    book.quantity = 3
    db.commit()

    rng = random.Random(1234)
    students = [catalog["x"], catalog["y"]]
    active = None

    for _ in range(40):
        if rng.random() < 0.6:
            try:
                active = ledger.create_loan(
                    catalog["book"], rng.choice(students), due_date=clock()
                )
            except BookAlreadyLoanedError:
                assert active is not None
        elif active is not None:
            ledger.return_loan(active.id)
            active = None

        available = ledger.available_quantity(catalog["book"])
        assert 0 <= available <= 3
        assert available == (2 if active is not None else 3)
        clock.advance(hours=1)


def test_partial_unique_index_rejects_second_active_loan(db, catalog):
    """The database refuses a second active loan even when the ledger is bypassed."""
    now = datetime(2024, 1, 1)
    db.add(
        models.Loan(
            book_id=catalog["book"], student_id=catalog["x"], loan_date=now, due_date=now
        )
    )
    db.commit()

    db.add(
        models.Loan(
            book_id=catalog["book"], student_id=catalog["y"], loan_date=now, due_date=now
        )
    )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    db.add(
        models.Loan(
            book_id=catalog["book"],
            student_id=catalog["y"],
            loan_date=now,
            due_date=now,
            return_date=now,
        )
    )
    db.commit()
    assert db.query(models.Loan).count() == 2


def test_index_violation_surfaces_as_already_loaned(ledger, catalog, clock, monkeypatch):
    ledger.create_loan(catalog["book"], catalog["x"], due_date=clock())

    # Simulate a competing request that passed the pre-check before our insert:
    # only the first check misses the active loan.
    monkeypatch.setattr(
        ledger.loans,
        "exists_active_for_book",
        answer_once(False, ledger.loans.exists_active_for_book),
    )

    with pytest.raises(BookAlreadyLoanedError):
        ledger.create_loan(catalog["book"], catalog["y"], due_date=clock())
    assert ledger.available_quantity(catalog["book"]) == 0


def test_foreign_key_violation_is_not_reported_as_already_loaned(
    ledger, catalog, clock, monkeypatch
):
    """A student removed after the pre-check surfaces as a missing student."""
    monkeypatch.setattr(
        ledger.students,
        "exists",
        answer_once(True, ledger.students.exists),
    )

    with pytest.raises(NotFoundError) as excinfo:
        ledger.create_loan(catalog["book"], 999, due_date=clock())
    assert excinfo.value.entity == "Student"
    assert ledger.available_quantity(catalog["book"]) == 1


def test_database_rejects_loans_without_their_book(db, catalog):
    now = datetime(2024, 1, 1)
    db.add(
        models.Loan(
            book_id=catalog["book"], student_id=catalog["x"], loan_date=now, due_date=now
        )
    )
    db.commit()

    with pytest.raises(IntegrityError):
        db.execute(text("DELETE FROM books WHERE id = :id"), {"id": catalog["book"]})
        db.commit()
    db.rollback()
    assert db.get(models.Book, catalog["book"]) is not None


def test_create_loan_bumps_book_version(ledger, catalog, db, clock):
    """A new loan changes the book's version, so stale book writes are refused."""
    before = db.get(models.Book, catalog["book"]).version_id

    ledger.create_loan(catalog["book"], catalog["x"], due_date=clock())

    db.expire_all()
    assert db.get(models.Book, catalog["book"]).version_id == before + 1


def test_book_locks_do_not_outlive_their_users(ledger, catalog, clock):
    with pytest.raises(NotFoundError):
        ledger.create_loan(424242, catalog["x"], due_date=clock())
    assert 424242 not in _book_locks

    ledger.create_loan(catalog["book"], catalog["x"], due_date=clock())
    assert catalog["book"] not in _book_locks


def test_is_late_follows_the_ledger_clock(ledger, catalog, clock):
    """
    is_late agrees with the ledger's status at the ledger's current time,
    on the model and on the serialised loan.
    """
    loan = ledger.create_loan(
        catalog["book"], catalog["x"], due_date=clock() + timedelta(days=4)
    )
    assert loan.is_late is False
    assert schemas.Loan.model_validate(loan).is_late is False

    clock.advance(days=5)
    loan = ledger.get_loan(loan.id)
    assert ledger.status_of(loan) is LoanStatus.OVERDUE
    assert loan.is_late is True
    assert schemas.Loan.model_validate(loan).is_late is True

    page = ledger.overdue_loans(1, 10)
    assert [item.is_late for item in page["items"]] == [True]

    returned = ledger.return_loan(loan.id)
    assert returned.is_late is False


def test_concurrent_lenders_leave_one_active_loan(catalog, clock):
    """
    Several threads lend the same book at once, each with its own session.
    Exactly one succeeds; the others are refused.
    """
    workers = 6
    barrier = threading.Barrier(workers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def attempt(student_id):
        session = TestingSessionLocal()
        try:
            barrier.wait()
            try:
                LoanLedger(session, clock=clock).create_loan(
                    catalog["book"], student_id, due_date=clock() + timedelta(days=7)
                )
                result = "lent"
            except BookAlreadyLoanedError:
                result = "refused"
            with outcomes_lock:
                outcomes.append(result)
        finally:
            session.close()

    threads = [
        threading.Thread(target=attempt, args=(catalog["x"] if n % 2 else catalog["y"],))
        for n in range(workers)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["lent"] + ["refused"] * (workers - 1)

    session = TestingSessionLocal()
    try:
        active = (
            session.query(models.Loan)
            .filter(
                models.Loan.book_id == catalog["book"],
                models.Loan.return_date.is_(None),
            )
            .count()
        )
    finally:
        session.close()
    assert active == 1


def test_concurrent_due_date_update_conflicts(ledger, catalog, clock):
    loan = ledger.create_loan(catalog["book"], catalog["x"], due_date=clock())
    loan_id = loan.id
    ledger.get_loan(loan_id)

    other = TestingSessionLocal()
    try:
        LoanLedger(other, clock=clock).update_due_date(
            loan_id, clock() + timedelta(days=3)
        )
    finally:
        other.close()

    with pytest.raises(ConcurrencyConflictError):
        ledger.update_due_date(loan_id, clock() + timedelta(days=5))

    assert ledger.get_loan(loan_id).due_date == clock() + timedelta(days=3)


def test_update_after_concurrent_delete_is_not_found(ledger, catalog, clock):
    loan = ledger.create_loan(catalog["book"], catalog["x"], due_date=clock())
    loan_id = loan.id

    other = TestingSessionLocal()
    try:
        LoanLedger(other, clock=clock).delete_loan(loan_id)
    finally:
        other.close()

    with pytest.raises(NotFoundError):
        ledger.update_due_date(loan_id, clock() + timedelta(days=5))
