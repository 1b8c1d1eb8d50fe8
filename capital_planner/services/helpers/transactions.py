"""
Transaction helpers shared by the service classes.

Transaction policy: internal ``_do_*`` steps only flush; each public
mutating operation wraps its steps in ``unit_of_work`` so that the
mutation, any renormalization and the audit rows commit together or not
at all.

Read paths that must stay up during a store outage are wrapped in
``read_fallback``: a ``SQLAlchemyError`` is logged, the session is rolled
back and a default value is returned instead of raising.
"""

import functools
import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(session):
    """Commit on success, roll back and re-raise on any error."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def read_fallback(default_factory):
    """
    Decorator for read-only service methods.

    The decorated method must belong to an object exposing ``session``.
    Only store errors are swallowed; business errors (NotFoundError,
    ValidationError) still propagate.

    Usage:
        @read_fallback(list)
        def get_project_scores(self, project_id): ...
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except SQLAlchemyError:
                logger.exception("Store error in %s; returning default result", fn.__qualname__)
                try:
                    self.session.rollback()
                except SQLAlchemyError:
                    logger.warning("Rollback after store error failed in %s", fn.__qualname__)
                return default_factory()
        return wrapper
    return decorator
