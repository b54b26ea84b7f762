class LibraryError(Exception):
    """Base exception for library rule failures."""

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class NotFoundError(LibraryError):
    """A referenced author, genre, book, student or loan does not exist."""

    def __init__(self, entity, entity_id):
        super().__init__(f"{entity} with id {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class BusinessRuleViolation(LibraryError):
    """The request is well formed but breaks a library rule."""


class BookAlreadyLoanedError(BusinessRuleViolation):
    def __init__(self, book_id):
        super().__init__(f"Book with id {book_id} is already loaned")
        self.book_id = book_id


class NoCopiesAvailableError(BusinessRuleViolation):
    def __init__(self, book_id):
        super().__init__(f"Book with id {book_id} has no copies to lend")
        self.book_id = book_id


class LoanAlreadyReturnedError(BusinessRuleViolation):
    def __init__(self, loan_id):
        super().__init__(f"Loan with id {loan_id} has already been returned")
        self.loan_id = loan_id


class LoanFinalizedError(BusinessRuleViolation):
    def __init__(self, loan_id):
        super().__init__(
            f"Loan with id {loan_id} is finalized and can no longer be updated"
        )
        self.loan_id = loan_id


class HasDependentsError(BusinessRuleViolation):
    """Deleting the record would orphan dependent records."""


class ConcurrencyConflictError(LibraryError):
    """The record changed between read and write in another transaction."""

    def __init__(self, entity, entity_id):
        super().__init__(
            f"{entity} with id {entity_id} was modified concurrently, retry the request"
        )
        self.entity = entity
        self.entity_id = entity_id
