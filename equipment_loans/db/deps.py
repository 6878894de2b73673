from collections.abc import Generator

from equipment_loans.db.session import SessionLocalLoans


def get_loan_db() -> Generator:
    db = SessionLocalLoans()
    try:
        yield db
    finally:
        db.close()
