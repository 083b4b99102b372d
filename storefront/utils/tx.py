# storefront/utils/tx.py
import logging

from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError
from ..extensions import db

logger = logging.getLogger(__name__)


def commit_versioned(fn, what, *, retries=1):
    """Run fn() and commit; returns fn's result.

    Versioned rows (see Order.version_id) refuse a write based on a stale
    read. When that happens the work is rolled back and fn runs again on the
    committed state, so its own state checks decide the outcome.
    """
    attempt = 0
    while True:
        try:
            result = fn()
            db.session.commit()
            return result
        except StaleDataError:
            db.session.rollback()
            if attempt >= retries:
                logger.warning("%s lost %s concurrent updates, giving up", what, attempt + 1)
                raise ConflictError(f"{what}: the order was changed by another request, please retry")
            attempt += 1
            logger.info("%s raced a concurrent update, retrying", what)
        except Exception:
            db.session.rollback()
            raise
