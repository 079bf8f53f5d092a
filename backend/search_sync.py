import logging

from db import settings

logger = logging.getLogger(__name__)

def get_algolia():
    """
    Return an Algolia client, or None when it is not configured or the SDK
    is missing. The search index is a mirror; circulation never depends on it.
    """
    if not settings.ALGOLIA_APP_ID or not settings.ALGOLIA_ADMIN_KEY or not settings.ALGOLIA_INDEX:
        return None

    try:
        from algoliasearch.search.client import SearchClientSync

        return SearchClientSync(settings.ALGOLIA_APP_ID, settings.ALGOLIA_ADMIN_KEY)
    except Exception:
        logger.warning("Algolia client unavailable; skipping search sync", exc_info=True)
        return None


def book_to_object(book):
    return {
        "objectID": str(book.book_id),
        "book_id": int(book.book_id),
        "title": book.title,
        "isbn": book.isbn,
        "status": book.status,
        "is_available": book.status == "available",
    }


def upsert_book(book):
    client = get_algolia()
    if not client:
        return False

    try:
        client.save_object(index_name=settings.ALGOLIA_INDEX, body=book_to_object(book))
    except Exception:
        # a stale index entry is tolerable, a failed checkout is not
        logger.warning("Failed to sync book %s to search index", book.book_id, exc_info=True)
        return False
    return True
