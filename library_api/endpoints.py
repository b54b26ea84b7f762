import logging

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from library_api import models
from library_api.config import settings
from library_api.database import engine
from library_api.errors import (
    BusinessRuleViolation,
    ConcurrencyConflictError,
    LibraryError,
    NotFoundError,
)
from library_api.routers import authors, books, genres, loans, students


logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title=settings.app_name,
    description="Library management with authors, genres, books, students and loan tracking",
    version=settings.app_version,
)

app.include_router(authors.router)
app.include_router(genres.router)
app.include_router(books.router)
app.include_router(students.router)
app.include_router(loans.router)


_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (BusinessRuleViolation, status.HTTP_400_BAD_REQUEST),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    """
    Translate domain errors into HTTP responses.

    Internal Working:
    1. Routers and the loan ledger raise LibraryError subclasses
    2. FastAPI routes them here instead of returning a 500
    3. The body has the same {"detail": ...} shape as HTTPException
    """
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break

    logger.info(
        "%s %s -> %s: %s", request.method, request.url.path, status_code, exc.message
    )
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Simple status message indicating the service is running
    """
    return {"status": "healthy", "service": "library-api"}


def main():
    """Serve the API with uvicorn on API_HOST:API_PORT."""
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
