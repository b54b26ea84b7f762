import math

from fastapi import Query

from library_api.config import settings


class PageParams:
    """
    Dependency collecting the page_number/page_size query parameters.

    Usage in endpoints:
    def list_books(page: PageParams = Depends(), db: Session = Depends(get_db))
    """

    def __init__(
        self,
        page_number: int = Query(1, ge=1),
        page_size: int = Query(
            settings.default_page_size, ge=1, le=settings.max_page_size
        ),
    ):
        self.page_number = page_number
        self.page_size = page_size


def paginate(query, page_number, page_size):
    """
    Run a SQLAlchemy query for one page.

    Internal Working:
    1. count() runs a SELECT COUNT(*) over the filtered query (ordering dropped)
    2. offset() and limit() select the requested page
    3. The result is a plain dict matching schemas.Page, so FastAPI can
       validate the ORM items against the endpoint's response_model

    Args:
        query: Filtered and ordered SQLAlchemy Query
        page_number: 1-based page number
        page_size: Number of items per page

    Returns:
        Dict with items, total_count and page navigation flags
    """
    total_count = query.order_by(None).count()
    items = query.offset((page_number - 1) * page_size).limit(page_size).all()
    total_pages = math.ceil(total_count / page_size)

    return {
        "items": items,
        "total_count": total_count,
        "page_number": page_number,
        "page_size": page_size,
        "total_pages": total_pages,
        "has_previous_page": page_number > 1,
        "has_next_page": page_number < total_pages,
    }
