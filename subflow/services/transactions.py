import logging
from contextlib import contextmanager

from subflow.errors import SubflowError, TransactionRolledBack
from subflow.extensions import db

logger = logging.getLogger(__name__)


@contextmanager
def saga_transaction(name: str, session=None):
    """
    One local step of a saga: commit on clean exit, roll back on any error.

    Domain errors (SubflowError) propagate unchanged after the rollback;
    anything else is wrapped in TransactionRolledBack so callers see a
    single failure type for "nothing was written".
    """
    session = session or db.session
    try:
        yield session
        session.commit()
    except SubflowError:
        session.rollback()
        raise
    except Exception as exc:
        session.rollback()
        logger.exception("saga_transaction_rolled_back step=%s", name)
        raise TransactionRolledBack(
            f"{name} rolled back: {type(exc).__name__}",
            context={"step": name},
        ) from exc
