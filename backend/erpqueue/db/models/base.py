from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# Register every model on Base.metadata for create_all() regardless of import order.
from erpqueue.db.models import jobs as _jobs  # noqa: F401,E402
