from datetime import datetime
from typing import Generic, List, Optional, TypeVar
from pydantic import BaseModel, ConfigDict, Field, field_validator


T = TypeVar("T")


def _to_naive_local(value):
    """
    Normalise timezone-aware timestamps to naive local time.

    Loans are stored and compared as naive local datetimes (datetime.now()),
    so an aware value such as "2024-05-01T10:00:00Z" is converted to the
    server's local zone before the tzinfo is dropped.
    """
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


class Page(BaseModel, Generic[T]):
    """
    One page of a paginated listing.

    total_pages is 0 when there are no items at all.
    """

    items: List[T]
    total_count: int
    page_number: int
    page_size: int
    total_pages: int
    has_previous_page: bool
    has_next_page: bool


class AuthorBase(BaseModel):
    """
    Base schema with common author fields.

    This is the parent class to avoid field duplication.
    """

    name: str = Field(..., min_length=1, max_length=100)
    biography: Optional[str] = Field(None, max_length=2000)


class AuthorCreate(AuthorBase):
    """Schema for creating a new author (POST /authors)."""

    pass


class AuthorUpdate(BaseModel):
    """Partial update; only the provided fields are changed."""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    biography: Optional[str] = Field(None, max_length=2000)


class Author(AuthorBase):
    """
    Schema for author responses.

    from_attributes lets Pydantic read the ORM object directly, including
    the book_count property.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    book_count: int


class BookSummary(BaseModel):
    """Compact book representation nested in author and genre responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    isbn: str
    publication_year: Optional[int] = None
    author_name: Optional[str] = None
    genre_name: Optional[str] = None


class AuthorWithBooks(Author):
    books: List[BookSummary] = []


class GenreBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=500)


class GenreCreate(GenreBase):
    pass


class GenreUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=500)


class Genre(GenreBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    book_count: int


class GenreWithBooks(Genre):
    books: List[BookSummary] = []


class BookBase(BaseModel):
    """Base schema with common book fields."""

    title: str = Field(..., min_length=1, max_length=500)
    isbn: str = Field(..., min_length=10, max_length=13)
    publication_year: Optional[int] = Field(None, ge=0, le=9999)
    quantity: int = Field(1, ge=0)


class BookCreate(BookBase):
    """
    Schema for creating a new book.

    Includes author_id and genre_id; both must reference existing records.
    """

    author_id: int = Field(..., gt=0)
    genre_id: int = Field(..., gt=0)


class BookUpdate(BaseModel):
    """
    Schema for updating a book.

    All fields are optional to support partial updates. quantity cannot be
    lowered below the number of copies currently on loan.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    isbn: Optional[str] = Field(None, min_length=10, max_length=13)
    publication_year: Optional[int] = Field(None, ge=0, le=9999)
    quantity: Optional[int] = Field(None, ge=0)
    author_id: Optional[int] = Field(None, gt=0)
    genre_id: Optional[int] = Field(None, gt=0)


class Book(BookBase):
    """
    Schema for book responses.

    available_quantity is computed from the loans at read time and is
    never accepted as input.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    author_id: int
    genre_id: int
    author_name: Optional[str] = None
    genre_name: Optional[str] = None
    available_quantity: int


class LoanSummary(BaseModel):
    """Loan entry in a book's loan history."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    loan_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    student_name: Optional[str] = None
    is_late: bool


class BookWithLoans(Book):
    loans: List[LoanSummary] = []


class StudentBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: Optional[str] = Field(None, max_length=200)
    registration_number: Optional[str] = Field(None, max_length=50)
    phone: Optional[str] = Field(None, max_length=30)


class StudentCreate(StudentBase):
    pass


class StudentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[str] = Field(None, max_length=200)
    registration_number: Optional[str] = Field(None, max_length=50)
    phone: Optional[str] = Field(None, max_length=30)


class Student(StudentBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    active_loans_count: int
    total_loans_count: int


class StudentWithLoans(Student):
    """
    Extended student schema including loan history.

    Forward reference "Loan" is used because the Loan schema is defined
    later.
    """

    loans: List["Loan"] = []


class LoanCreate(BaseModel):
    """
    Schema for lending a book to a student.

    loan_date defaults to the time of creation when omitted. due_date is
    required and is not checked against loan_date.
    """

    book_id: int = Field(..., gt=0)
    student_id: int = Field(..., gt=0)
    loan_date: Optional[datetime] = None
    due_date: datetime

    @field_validator("loan_date", "due_date")
    @classmethod
    def normalise_timezone(cls, value):
        return _to_naive_local(value)


class LoanUpdate(BaseModel):
    """Only the due date of an active loan can be changed."""

    due_date: datetime

    @field_validator("due_date")
    @classmethod
    def normalise_timezone(cls, value):
        return _to_naive_local(value)


class Loan(BaseModel):
    """
    Schema for loan responses.

    Internal Working:
    - book_title and student_name are denormalised for display
    - is_returned and is_late are derived on every read
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    loan_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    book_id: int
    student_id: int
    book_title: Optional[str] = None
    student_name: Optional[str] = None
    is_returned: bool
    is_late: bool


class BookDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    isbn: str
    author_name: Optional[str] = None
    genre_name: Optional[str] = None


class StudentDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: Optional[str] = None
    registration_number: Optional[str] = None
    phone: Optional[str] = None


class LoanDetail(Loan):
    """Loan with the full book and student it refers to."""

    book: BookDetail
    student: StudentDetail


class LoanStats(BaseModel):
    """
    Loan counters evaluated at query time.

    active_loans excludes overdue loans, so
    total_loans == active_loans + returned_loans + overdue_loans.
    """

    total_loans: int
    active_loans: int
    returned_loans: int
    overdue_loans: int


StudentWithLoans.model_rebuild()
