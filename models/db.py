from contextlib import contextmanager

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


@contextmanager
def atomic():
    """
    Run a block of ledger writes as one transaction.
    Commits when the block exits normally, rolls back and re-raises otherwise.
    """
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def end_read_transaction():
    """Close the transaction opened by plain reads so no lock or snapshot outlives slow I/O."""
    db.session.rollback()
