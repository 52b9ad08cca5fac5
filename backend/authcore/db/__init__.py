from authcore.db.base import Base
from authcore.db.session import create_session_maker, get_db, init_db, unit_of_work

__all__ = ["Base", "create_session_maker", "get_db", "init_db", "unit_of_work"]
