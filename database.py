from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from config import DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
        Создает и предоставляет сессию базы данных через генератор.

        Сессия используется для выполнения операций с базой данных.
        После завершения работы сессия автоматически закрывается.

        Yields:
            Session: Объект сессии SQLAlchemy.
        """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
