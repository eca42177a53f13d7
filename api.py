import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from auth import AuthService
from book import Book
from config import settings
from database import get_db_connection, utc_now
from errors import ForbiddenError, LibraryError
from lending import LendingService
from library import Library
from loan import Loan
from user import Principal, User

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()
lending = LendingService(library)
accounts = AuthService(library.db_file)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Make sure there is always at least one admin account
    try:
        accounts.seed_admin()
    except LibraryError:
        logger.exception("Admin seed failed; starting without a default admin")
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    # Catalogue and loan data change with every borrow/return
    if request.url.path.startswith("/api/"):
        response.headers["Cache-Control"] = "no-store"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Principal:
    """Verify the bearer token on every request and reload the caller's role."""
    return accounts.principal_from_token(credentials.credentials if credentials else None)


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin access required.")
    return principal


# --- Models ---
class UserModel(BaseModel):
    id: int
    name: str
    email: str
    role: str
    created_at: datetime | None = None


class RegisterModel(BaseModel):
    name: str | None = None
    email: str | None = None
    password: str | None = None
    role: str | None = None


class LoginModel(BaseModel):
    email: str | None = None
    password: str | None = None


class AuthResponse(BaseModel):
    message: str
    user: UserModel
    token: str


class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str | None = None
    category: str | None = None
    description: str | None = None
    status: str
    created_at: datetime | None = None
    current_due_date: datetime | None = None


class BookListResponse(BaseModel):
    count: int
    books: List[BookModel]


class BookCreateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    category: str | None = None
    description: str | None = None
    status: str | None = Field(default=None, description="Only 'available' is accepted for a new book")


class UpdateBookModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    category: str | None = None
    description: str | None = None
    status: str | None = Field(default=None, description="Must match the status derived from borrow records")


class BookMessageResponse(BaseModel):
    message: str
    book: BookModel


class MessageResponse(BaseModel):
    message: str


class LoanModel(BaseModel):
    id: int
    user_id: int
    book_id: int
    borrowed_at: datetime
    due_date: datetime
    returned_at: datetime | None = None


class LoanListResponse(BaseModel):
    count: int
    loans: List[LoanModel]


class BorrowResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    due_date: datetime = Field(alias="dueDate")
    loan: LoanModel


class ReturnResponse(BaseModel):
    message: str
    loan: LoanModel


class InconsistencyModel(BaseModel):
    id: int
    title: str
    status: str
    expected_status: str
    active_loans: int


class ConsistencyResponse(BaseModel):
    consistent: bool
    mismatches: List[InconsistencyModel]


class ReconcileResponse(BaseModel):
    message: str
    fixed: List[int]


def _book_model(book: Book) -> BookModel:
    return BookModel(**book.to_dict())


def _loan_model(loan: Loan) -> LoanModel:
    return LoanModel(**loan.to_dict())


def _auth_response(message: str, user: User, token: str) -> AuthResponse:
    return AuthResponse(message=message, user=UserModel(**user.to_dict()), token=token)


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health check with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": utc_now().isoformat(),
        "db": db_ok,
    }


# --- Auth ---
@app.post("/api/auth/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterModel):
    """Create an account and return a token so the user is logged in immediately."""
    user, token = accounts.register(payload.name, payload.email, payload.password, payload.role)
    return _auth_response("User registered successfully.", user, token)


@app.post("/api/auth/login", response_model=AuthResponse)
def login(payload: LoginModel):
    user, token = accounts.login(payload.email, payload.password)
    return _auth_response("Login successful.", user, token)


# --- Catalogue ---
@app.get("/api/books", response_model=BookListResponse)
def get_books(
    search: Optional[str] = Query(None, description="Matches title or author, case-insensitive"),
    category: Optional[str] = Query(None, description="Exact category, case-insensitive"),
    status: Optional[str] = Query(None, description="available | borrowed"),
):
    """List books newest first, each with the due date of its open loan if any."""
    books = library.list_books(search=search, category=category, status=status)
    return BookListResponse(count=len(books), books=[_book_model(b) for b in books])


@app.get("/api/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    return _book_model(library.get_book(book_id))


@app.post("/api/books", response_model=BookMessageResponse, status_code=201)
def create_book(payload: BookCreateModel, principal: Principal = Depends(require_admin)):
    book = library.add_book(
        payload.title, payload.author, isbn=payload.isbn, category=payload.category,
        description=payload.description, status=payload.status,
    )
    return BookMessageResponse(message="Book created successfully.", book=_book_model(book))


@app.put("/api/books/{book_id}", response_model=BookMessageResponse)
def update_book(book_id: int, update: UpdateBookModel, principal: Principal = Depends(require_admin)):
    """Update the fields that were sent; anything omitted keeps its old value."""
    book = library.update_book(book_id, update.model_dump(exclude_unset=True))
    return BookMessageResponse(message="Book updated successfully.", book=_book_model(book))


@app.delete("/api/books/{book_id}", response_model=MessageResponse)
def delete_book(book_id: int, principal: Principal = Depends(require_admin)):
    library.remove_book(book_id)
    return MessageResponse(message="Book deleted successfully.")


# --- Lending ---
@app.post("/api/books/{book_id}/borrow", response_model=BorrowResponse)
def borrow_book(book_id: int, principal: Principal = Depends(get_current_principal)):
    loan = lending.borrow(principal, book_id)
    return BorrowResponse(message="Book borrowed successfully.", due_date=loan.due_date, loan=_loan_model(loan))


@app.post("/api/books/{book_id}/return", response_model=ReturnResponse)
def return_book(book_id: int, principal: Principal = Depends(get_current_principal)):
    loan = lending.return_book(principal, book_id)
    return ReturnResponse(message="Book returned successfully.", loan=_loan_model(loan))


@app.get("/api/loans/me", response_model=LoanListResponse)
def my_loans(active: bool = Query(False, description="Only loans not yet returned"),
             principal: Principal = Depends(get_current_principal)):
    loans = lending.loans_for(principal, active_only=active)
    return LoanListResponse(count=len(loans), loans=[_loan_model(l) for l in loans])


# --- Admin ---
@app.get("/api/loans", response_model=LoanListResponse)
def all_loans(active: bool = Query(False, description="Only loans not yet returned"),
              principal: Principal = Depends(require_admin)):
    loans = lending.all_loans(active_only=active)
    return LoanListResponse(count=len(loans), loans=[_loan_model(l) for l in loans])


@app.get("/api/admin/consistency", response_model=ConsistencyResponse)
def check_consistency(principal: Principal = Depends(require_admin)):
    """Books whose status disagrees with their open borrow records."""
    mismatches = library.find_inconsistencies()
    return ConsistencyResponse(consistent=not mismatches, mismatches=mismatches)


@app.post("/api/admin/reconcile", response_model=ReconcileResponse)
def reconcile(principal: Principal = Depends(require_admin)):
    fixed = library.reconcile()
    return ReconcileResponse(message=f"{len(fixed)} book(s) reconciled.", fixed=fixed)
