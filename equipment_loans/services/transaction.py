from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from equipment_loans.services.errors import Conflict

LOGGER = logging.getLogger("equipment_loans.lifecycle")

_LOCK_ERROR_MARKERS = ("lock", "timeout", "deadlock", "serialize")


def is_lock_error(exc: OperationalError) -> bool:
    text = str(getattr(exc, "orig", exc) or "").lower()
    return any(marker in text for marker in _LOCK_ERROR_MARKERS)


@contextmanager
def unit_of_work(db: Session) -> Iterator[None]:
    """Commit on success; roll back on any error, mapping write races to ``Conflict``."""
    try:
        yield
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        LOGGER.warning("Concurrent equipment update detected; rolled back error=%s", exc)
        raise Conflict("The equipment was changed by another request. Please retry.") from exc
    except OperationalError as exc:
        db.rollback()
        if is_lock_error(exc):
            LOGGER.warning("Lock acquisition failed; rolled back error=%s", exc)
            raise Conflict("The equipment is locked by another request. Please retry.") from exc
        raise
    except Exception:
        db.rollback()
        raise
