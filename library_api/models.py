from datetime import datetime
from library_api.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Index, text


class Author(Base):
    """
    Author model representing book authors.

    Relationships:
    - One author can have many books (one-to-many)

    An author with books cannot be deleted, so there is no delete cascade
    on the books relationship.
    """

    __tablename__ = "authors"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    biography = Column(String(2000), nullable=True)

    books = relationship("Book", back_populates="author")

    @property
    def book_count(self):
        return len(self.books)


class Genre(Base):
    """Genre model. Books are classified under exactly one genre."""

    __tablename__ = "genres"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False, index=True)
    description = Column(String(500), nullable=True)

    books = relationship("Book", back_populates="genre")

    @property
    def book_count(self):
        return len(self.books)


class Book(Base):
    """
    Book model representing library books.

    Relationships:
    - Many books belong to one author and one genre (many-to-one)
    - One book can have many loans (one-to-many)

    Availability:
    - quantity is the number of copies the library owns
    - available_quantity is derived from the loans loaded in the current
      session and is never stored
    - version_id is bumped by SQLAlchemy on every UPDATE, and the loan ledger
      bumps it whenever it lends a copy; a stale write raises StaleDataError
      instead of silently overwriting
    """

    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=False, index=True)
    isbn = Column(String(13), unique=True, nullable=False, index=True)
    publication_year = Column(Integer, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    author_id = Column(Integer, ForeignKey("authors.id"), nullable=False)
    genre_id = Column(Integer, ForeignKey("genres.id"), nullable=False)
    version_id = Column(Integer, nullable=False)

    author = relationship("Author", back_populates="books")
    genre = relationship("Genre", back_populates="books")

    loans = relationship(
        "Loan",
        back_populates="book",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def active_loans_count(self):
        return sum(1 for loan in self.loans if loan.return_date is None)

    @property
    def available_quantity(self):
        return self.quantity - self.active_loans_count

    @property
    def author_name(self):
        return self.author.name if self.author else None

    @property
    def genre_name(self):
        return self.genre.name if self.genre else None


class Student(Base):
    """Student model. Only its existence matters when lending a book."""

    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, index=True)
    email = Column(String(200), nullable=True)
    registration_number = Column(String(50), nullable=True, index=True)
    phone = Column(String(30), nullable=True)

    loans = relationship(
        "Loan",
        back_populates="student",
        cascade="all, delete-orphan",
    )

    @property
    def active_loans_count(self):
        return sum(1 for loan in self.loans if loan.return_date is None)

    @property
    def total_loans_count(self):
        return len(self.loans)


class Loan(Base):
    """
    Loan model representing a copy of a book lent to a student.

    State:
    - return_date IS NULL means the loan is active
    - return_date set means the loan is returned; it is never mutated again

    Internal Working:
    - The partial unique index on book_id WHERE return_date IS NULL lets the
      database reject a second active loan for the same book, even when two
      requests pass the ledger's pre-check at the same time
    - version_id gives optimistic concurrency control for due date updates
    """

    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    loan_date = Column(DateTime, default=datetime.now, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    student_id = Column(
        Integer, ForeignKey("students.id"), nullable=False, index=True
    )
    version_id = Column(Integer, nullable=False)

    book = relationship("Book", back_populates="loans")
    student = relationship("Student", back_populates="loans")

    __table_args__ = (
        Index(
            "uq_loans_active_book",
            "book_id",
            unique=True,
            sqlite_where=text("return_date IS NULL"),
            postgresql_where=text("return_date IS NULL"),
        ),
    )
    __mapper_args__ = {"version_id_col": version_id}

    # Instant is_late is judged at; the loan ledger sets it from its clock.
    as_of = None

    @property
    def is_returned(self):
        return self.return_date is not None

    def is_late_at(self, now):
        return not self.is_returned and now > self.due_date

    @property
    def is_late(self):
        now = self.as_of if self.as_of is not None else datetime.now()
        return self.is_late_at(now)

    @property
    def book_title(self):
        return self.book.title if self.book else None

    @property
    def student_name(self):
        return self.student.name if self.student else None
