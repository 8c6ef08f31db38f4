"""
REST-сервис выдачи книг библиотеки.

Этот проект реализует REST API жизненного цикла выдачи книг: студент
подает заявку, администратор одобряет или отклоняет ее, одобренная заявка
становится займом, займ возвращается или становится просроченным со штрафом.
Количество доступных экземпляров каждой книги остается согласованным при
одновременных запросах.

Основные компоненты:
1. Регистрация и авторизация пользователей (студенты и администраторы).
2. Каталог книг с учетом экземпляров.
3. Заявки на выдачу, их одобрение, отклонение и отмена.
4. Займы, возврат книг, расчет просрочки и штрафов.

Технологии:
- FastAPI: Для создания REST API.
- SQLAlchemy: Для работы с базой данных.
- Pydantic: Для валидации данных.
- JWT: Для аутентификации и авторизации.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from catalog import BookCatalog, UserDirectory
from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, LOG_LEVEL, SECRET_KEY
from database import Base, SessionLocal, engine, get_db
from errors import LendingError
from inventory import InventoryLedger
from lifecycle import LifecycleOrchestrator
from models import Book, LoanStatus, Role, User
from schemas import (
    AvailabilityView,
    BookCreate,
    BookResponse,
    BorrowRequestCreate,
    BorrowRequestView,
    DirectCheckout,
    LoanView,
    ProcessRequest,
    ReturnBook,
    StaffCreate,
    SweepResult,
    Token,
    UserCreate,
    UserInDB,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI()

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

Base.metadata.create_all(bind=engine)


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def verify_password(plain_password, hashed_password) -> bool:
    """
        Проверяет, соответствует ли обычный пароль хэшированному паролю.

        Args:
            plain_password (str): Пароль в открытом виде.
            hashed_password (str): Хэшированный пароль из базы данных.

        Returns:
            bool: True, если пароли совпадают, иначе False.
    """
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password) -> str:
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
        Создает JWT-токен доступа на основе входных данных.

        Args:
            data (dict): Данные для кодирования в токен (например, username).
            expires_delta (Optional[timedelta]): Время жизни токена. Если не указано,
                используется значение по умолчанию (15 минут).

        Returns:
            str: Закодированный JWT-токен.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def authenticate_user(db: Session, username: str, password: str) -> Union[User, bool]:
    user = UserDirectory(db).by_username(username)
    if not user or not verify_password(password, user.password_hash):
        return False
    return user

async def get_current_user(
        token: str = Depends(oauth2_scheme),
        db: Session = Depends(get_db)
) -> User:
    """
       Получает текущего пользователя на основе JWT-токена.

       Args:
           token (str): JWT-токен доступа.
           db (Session): Сессия базы данных.

       Raises:
           HTTPException: Если токен недействителен или пользователь не найден.

       Returns:
           User: Объект текущего пользователя.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = UserDirectory(db).by_username(username)
    if user is None:
        raise credentials_exception
    return user

async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role is not Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied: admin role required")
    return current_user

async def require_student(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role is not Role.STUDENT:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied: student role required")
    return current_user

def get_orchestrator(db: Session = Depends(get_db)) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(db)

def book_response(db: Session, book: Book) -> BookResponse:
    record = InventoryLedger(db).get(book.id)
    return BookResponse(
        id=book.id,
        uuid=book.uuid,
        title=book.title,
        author=book.author,
        isbn=book.isbn,
        published_year=book.published_year,
        total_copies=record.total_copies if record else 1,
        available_copies=record.available_copies if record else 1,
    )

def user_response(user: User) -> UserInDB:
    return UserInDB(id=user.id, uuid=user.uuid, username=user.username, role=user.role.value)

def create_user(db: Session, username: str, password: str, role: Role) -> User:
    """
        Создает пользователя с заданной ролью.

        Raises:
            HTTPException: Если пользователь с таким именем уже зарегистрирован.
    """
    if UserDirectory(db).by_username(username):
        raise HTTPException(status_code=400, detail="Username already registered")
    db_user = User(
        username=username,
        password_hash=get_password_hash(password),
        role=role,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    logger.info("Registered %s %s", db_user.role.value, db_user.username)
    return db_user

@app.post("/register", response_model=UserInDB)
def register(user: UserCreate, db: Session = Depends(get_db)) -> UserInDB:
    """
        Регистрирует нового студента в системе.

        Роль при самостоятельной регистрации всегда student: администраторов
        создает другой администратор через /users или команда create-admin.

        Args:
            user (UserCreate): Данные для регистрации (username и password).
            db (Session): Сессия базы данных.

        Raises:
            HTTPException: Если пользователь с таким именем уже зарегистрирован.

        Returns:
            UserInDB: Созданный пользователь.
    """
    return user_response(create_user(db, user.username, user.password, Role.STUDENT))

@app.post("/users", response_model=UserInDB)
def create_staff_user(
        user: StaffCreate,
        db: Session = Depends(get_db),
        current_user: User = Depends(require_admin)
) -> UserInDB:
    return user_response(create_user(db, user.username, user.password, Role(user.role)))

@app.post("/token", response_model=Token)
def login_for_access_token(
        form_data: OAuth2PasswordRequestForm = Depends(),
        db: Session = Depends(get_db)
) -> dict:
    """
        Аутентифицирует пользователя и выдает токен доступа.

        Args:
            form_data (OAuth2PasswordRequestForm): Данные формы для аутентификации (user и pass).
            db (Session): Сессия базы данных.

        Raises:
            HTTPException: Если имя пользователя или пароль неверны.

        Returns:
            dict: Токен доступа и его тип.
    """
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(data={"sub": user.username},
                                       expires_delta=access_token_expires)
    return {"access_token": access_token, "token_type": "bearer"}

@app.get("/users/me", response_model=UserInDB)
def read_current_user(current_user: User = Depends(get_current_user)) -> UserInDB:
    return user_response(current_user)

@app.post("/books", response_model=BookResponse)
def create_book(
        book: BookCreate,
        db: Session = Depends(get_db),
        current_user: User = Depends(require_admin)
) -> BookResponse:
    """
    Добавляет книгу в каталог вместе с нужным количеством экземпляров.

    Args:
        book (BookCreate): Данные книги и количество экземпляров.
        db (Session): Сессия базы данных для выполнения операций.
        current_user (User): Текущий администратор.

    Returns:
        BookResponse: Созданная книга с текущими остатками.
    """
    db_book = BookCatalog(db).add_book(
        title=book.title,
        author=book.author,
        isbn=book.isbn,
        published_year=book.published_year,
        total_copies=book.total_copies,
    )
    return book_response(db, db_book)

@app.get("/books", response_model=List[BookResponse])
def read_books(skip: int = 0, limit: int = 10, db: Session = Depends(get_db)) -> List[BookResponse]:
    """
       Возвращает список книг с поддержкой пагинации.

       Args:
           skip (int): Количество записей, которые нужно пропустить.
           limit (int): Максимальное количество записей для возврата.
           db (Session): Сессия базы данных для выполнения операций.

       Returns:
           List[BookResponse]: Список книг с остатками.
    """
    return [book_response(db, book) for book in BookCatalog(db).list_books(skip, limit)]

@app.get("/books/{book_uuid}", response_model=BookResponse)
def read_book(book_uuid: str, db: Session = Depends(get_db)) -> BookResponse:
    return book_response(db, BookCatalog(db).resolve_uuid(book_uuid))

@app.post("/borrowings/request", response_model=BorrowRequestView, status_code=status.HTTP_201_CREATED)
def request_borrow(
    body: BorrowRequestCreate,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_student)
) -> BorrowRequestView:
    """
    Создает заявку студента на выдачу книги.

    Args:
        body (BorrowRequestCreate): Публичный ID книги и желаемый срок займа.
        orchestrator (LifecycleOrchestrator): Сценарии выдачи книг.
        current_user (User): Текущий студент.

    Returns:
        BorrowRequestView: Созданная заявка в статусе pending.
    """
    return orchestrator.request_borrow(current_user, body.book_id, body.requested_days)

@app.get("/borrowings/my-borrowings", response_model=List[LoanView])
def my_borrowings(
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(get_current_user)
) -> List[LoanView]:
    return orchestrator.my_borrowings(current_user)

@app.get("/borrowings/my-history", response_model=List[LoanView])
def my_history(
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(get_current_user)
) -> List[LoanView]:
    return orchestrator.my_history(current_user)

@app.get("/borrowings/my-requests", response_model=List[BorrowRequestView])
def my_requests(
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(get_current_user)
) -> List[BorrowRequestView]:
    return orchestrator.my_requests(current_user)

@app.patch("/borrowings/cancel/{request_uuid}", response_model=BorrowRequestView)
def cancel_request(
    request_uuid: str,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(get_current_user)
) -> BorrowRequestView:
    """
    Отменяет собственную заявку студента, пока она в статусе pending.

    Raises:
        HTTPException: 404, если заявка не найдена, 403, если она чужая,
            409, если она уже обработана.
    """
    return orchestrator.cancel_request(current_user, request_uuid)

@app.get("/borrowings/availability/{book_uuid}", response_model=AvailabilityView)
def check_availability(
    book_uuid: str,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(get_current_user)
) -> AvailabilityView:
    return orchestrator.check_availability(book_uuid)

@app.get("/borrowings/admin/pending-requests", response_model=List[BorrowRequestView])
def pending_requests(
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_admin)
) -> List[BorrowRequestView]:
    return orchestrator.pending_requests(current_user)

@app.patch("/borrowings/admin/process/{request_uuid}", response_model=BorrowRequestView)
def process_request(
    request_uuid: str,
    body: ProcessRequest,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_admin)
) -> BorrowRequestView:
    """
    Одобряет или отклоняет заявку.

    Args:
        request_uuid (str): Публичный ID заявки.
        body (ProcessRequest): Решение и причина отказа.
        orchestrator (LifecycleOrchestrator): Сценарии выдачи книг.
        current_user (User): Текущий администратор.

    Raises:
        HTTPException: 409, если заявка уже обработана или свободных экземпляров нет.

    Returns:
        BorrowRequestView: Обработанная заявка.
    """
    return orchestrator.process_request(current_user, request_uuid, body.action, body.rejection_reason)

@app.post("/borrowings/admin/return/{loan_uuid}", response_model=LoanView)
def return_book(
    loan_uuid: str,
    body: Optional[ReturnBook] = None,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_admin)
) -> LoanView:
    """
    Принимает книгу у читателя.

    Args:
        loan_uuid (str): Публичный ID займа.
        body (Optional[ReturnBook]): Заметки о возврате.
        orchestrator (LifecycleOrchestrator): Сценарии выдачи книг.
        current_user (User): Текущий администратор.

    Raises:
        HTTPException: 404, если займ не найден, 409, если книга уже возвращена.

    Returns:
        LoanView: Закрытый займ с итоговым штрафом.
    """
    notes = body.return_notes if body else None
    return orchestrator.return_loan(current_user, loan_uuid, notes)

@app.post("/borrowings/admin/checkout", response_model=LoanView, status_code=status.HTTP_201_CREATED)
def direct_checkout(
    body: DirectCheckout,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_admin)
) -> LoanView:
    return orchestrator.direct_checkout(current_user, body.user_id, body.book_id, body.loan_days, body.notes)

@app.get("/borrowings/admin/overdue", response_model=List[LoanView])
def overdue_books(
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_admin)
) -> List[LoanView]:
    return orchestrator.overdue_loans(current_user)

@app.post("/borrowings/admin/update-overdue", response_model=SweepResult)
def update_overdue(
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_admin)
) -> SweepResult:
    """
    Запускает пересчет просроченных займов вручную.

    Returns:
        SweepResult: Количество обновленных займов и количество ошибок.
    """
    return orchestrator.sweep_overdue(current_user)

@app.get("/borrowings/admin/loans", response_model=List[LoanView])
def list_loans(
    status: Optional[LoanStatus] = None,
    user_id: Optional[str] = None,
    book_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 10,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_admin)
) -> List[LoanView]:
    return orchestrator.list_loans(current_user, status, user_id, book_id, skip, limit)

@app.get("/borrowings/{loan_uuid}", response_model=LoanView)
def borrowing_details(
    loan_uuid: str,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(get_current_user)
) -> LoanView:
    return orchestrator.loan_details(current_user, loan_uuid)

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Library lending service")
    commands = parser.add_subparsers(dest="command")
    create_admin = commands.add_parser("create-admin", help="create an admin account")
    create_admin.add_argument("username")
    create_admin.add_argument("password")
    args = parser.parse_args()

    if args.command == "create-admin":
        session = SessionLocal()
        try:
            create_user(session, args.username, args.password, Role.ADMIN)
        finally:
            session.close()
    else:
        import uvicorn
        uvicorn.run(app, host="127.0.0.1", port=8000)
