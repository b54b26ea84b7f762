from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from library_api import schemas
from library_api.database import get_db
from library_api.ledger import LoanLedger, LoanStatus
from library_api.pagination import PageParams

router = APIRouter(prefix="/loans", tags=["loans"])


def get_ledger(db: Session = Depends(get_db)) -> LoanLedger:
    """Dependency providing a LoanLedger bound to the request's session."""
    return LoanLedger(db)


@router.get("", response_model=schemas.Page[schemas.Loan])
def list_loans(page: PageParams = Depends(), ledger: LoanLedger = Depends(get_ledger)):
    return ledger.list_loans(page.page_number, page.page_size)


@router.post(
    "",
    response_model=schemas.Loan,
    status_code=status.HTTP_201_CREATED,
)
def create_loan(loan: schemas.LoanCreate, ledger: LoanLedger = Depends(get_ledger)):
    """
    Lend a book to a student.

    Business Logic:
    1. Verify the book exists
    2. Verify the student exists
    3. Check the book is not already loaned out (not returned)
    4. Create the loan; loan_date defaults to now

    Raises:
        NotFoundError: 404 if book or student not found
        BookAlreadyLoanedError: 400 if the book is already loaned
    """
    return ledger.create_loan(
        book_id=loan.book_id,
        student_id=loan.student_id,
        due_date=loan.due_date,
        loan_date=loan.loan_date,
    )


@router.get("/overdue", response_model=schemas.Page[schemas.Loan])
def list_overdue_loans(
    page: PageParams = Depends(), ledger: LoanLedger = Depends(get_ledger)
):
    """Active loans whose due date is before the current time."""
    return ledger.overdue_loans(page.page_number, page.page_size)


@router.get("/search", response_model=schemas.Page[schemas.Loan])
def search_loans(
    book_title: Optional[str] = Query(None),
    student_name: Optional[str] = Query(None),
    status: Optional[LoanStatus] = Query(None),
    page: PageParams = Depends(),
    ledger: LoanLedger = Depends(get_ledger),
):
    """
    Search loans by book title, student name and status.

    status is one of active, returned or overdue; the three never overlap.
    Unknown values are rejected with 422.
    """
    return ledger.search_loans(
        book_title=book_title,
        student_name=student_name,
        status=status,
        page_number=page.page_number,
        page_size=page.page_size,
    )


@router.get("/stats", response_model=schemas.LoanStats)
def loan_stats(ledger: LoanLedger = Depends(get_ledger)):
    return ledger.stats()


@router.get("/{loan_id}", response_model=schemas.LoanDetail)
def get_loan(loan_id: int, ledger: LoanLedger = Depends(get_ledger)):
    """Get a loan together with its book and student details."""
    return ledger.get_loan(loan_id)


@router.patch("/{loan_id}", response_model=schemas.Loan)
def update_loan(
    loan_id: int,
    loan_update: schemas.LoanUpdate,
    ledger: LoanLedger = Depends(get_ledger),
):
    """
    Change the due date of an active loan.

    Raises:
        NotFoundError: 404 if loan not found
        LoanFinalizedError: 400 if the loan was already returned
        ConcurrencyConflictError: 409 if the loan changed meanwhile
    """
    return ledger.update_due_date(loan_id, loan_update.due_date)


@router.patch("/{loan_id}/return", response_model=schemas.Loan)
def return_loan(loan_id: int, ledger: LoanLedger = Depends(get_ledger)):
    """
    Mark a loan as returned.

    Raises:
        NotFoundError: 404 if loan not found
        LoanAlreadyReturnedError: 400 if already returned
    """
    return ledger.return_loan(loan_id)


@router.delete("/{loan_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_loan(loan_id: int, ledger: LoanLedger = Depends(get_ledger)):
    """Delete a loan; deleting an active loan releases the book."""
    ledger.delete_loan(loan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
