from contextlib import asynccontextmanager
from datetime import datetime
from http import HTTPStatus
from typing import Annotated, Any, Optional
import asyncio, logging, re

from fastapi import APIRouter, FastAPI, Depends, Path, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import TaskStore
from errors import ApiError, Conflict, NotFound, Unauthenticated
from filters import TaskFilterCriteria, TaskPriority, TaskStatus, parse_timestamp
from logging_setup import setup_logging
from queries import TaskQueryHandler
from security import AuthGate, CredentialVerifier, RequestContext, hash_password, verify_password
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)
router = APIRouter(prefix="/api")

# sqlite INTEGER: 64-bit со знаком
MAX_ID = 2**63 - 1

TaskId = Annotated[int, Path(gt=0, le=MAX_ID)]
CategoryId = Annotated[int, Path(gt=0, le=MAX_ID)]
LinkId = Annotated[int, Path(gt=0, le=MAX_ID)]

# ─────────────────────────────────────────
#  ОТВЕТЫ: единый конверт
# ─────────────────────────────────────────

def envelope(status_code: int, message: Optional[str], data: Any = None, error: Any = None) -> JSONResponse:
    """{statusCode, message, data, error}: одинаково для успеха и ошибок"""
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"statusCode": status_code, "message": message, "data": data, "error": error}),
    )

# ─────────────────────────────────────────
#  ЗАВИСИМОСТИ
# ─────────────────────────────────────────

def get_store(request: Request) -> TaskStore:
    return request.app.state.store

def get_verifier(request: Request) -> CredentialVerifier:
    return request.app.state.verifier

def get_task_queries(request: Request) -> TaskQueryHandler:
    return request.app.state.task_queries

async def get_current_subject(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> RequestContext:
    """Проверяет токен и возвращает контекст запроса с id пользователя"""
    gate: AuthGate = request.app.state.auth_gate
    return await gate.open(credentials)

# ─────────────────────────────────────────
#  МОДЕЛИ ДАННЫХ (с валидацией)
# ─────────────────────────────────────────

class RegisterModel(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: str = Field(..., min_length=5, max_length=100)
    password: str = Field(..., min_length=8, max_length=100)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if not re.match(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$", v):
            raise ValueError("Неверный формат email")
        return v.lower()

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        if not re.match(r"^[a-zA-Z0-9_]+$", v):
            raise ValueError("Имя пользователя: только буквы, цифры и _")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        # Минимум по одной строчной, заглавной, цифре и спецсимволу
        checks = (r"[a-z]", r"[A-Z]", r"[0-9]", r"[^a-zA-Z0-9]")
        if not all(re.search(p, v) for p in checks):
            raise ValueError("Слабый пароль: нужны строчные и заглавные буквы, цифры и спецсимволы")
        return v

class LoginModel(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Название категории не может быть пустым")
        return v

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Название категории не может быть пустым")
        return v

class TaskCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    due_date: datetime = Field(..., alias="dueDate")
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v):
        if isinstance(v, str):
            return parse_timestamp(v)
        return v

class TaskUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    due_date: Optional[datetime] = Field(None, alias="dueDate")
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v):
        if isinstance(v, str):
            return parse_timestamp(v)
        return v

class StatusUpdate(BaseModel):
    status: TaskStatus

class TaskCategoryCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: int = Field(..., alias="taskId", gt=0, le=MAX_ID)
    category_id: int = Field(..., alias="categoryId", gt=0, le=MAX_ID)

class TaskCategoryUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: Optional[int] = Field(None, alias="taskId", gt=0, le=MAX_ID)
    category_id: Optional[int] = Field(None, alias="categoryId", gt=0, le=MAX_ID)

# ─────────────────────────────────────────
#  АУТЕНТИФИКАЦИЯ
# ─────────────────────────────────────────

@router.post("/auth/register", tags=["Auth"])
async def register(data: RegisterModel, store: TaskStore = Depends(get_store)):
    """Регистрация нового пользователя"""
    if await asyncio.to_thread(store.find_user_conflict, data.username, data.email):
        raise Conflict("Пользователь с таким именем или email уже существует")

    # PBKDF2 и sqlite: только в пуле потоков
    pwd_hash, pwd_salt = await asyncio.to_thread(hash_password, data.password)
    user = await asyncio.to_thread(store.create_user, data.username, data.email, pwd_hash, pwd_salt)
    logger.info("Зарегистрирован пользователь id=%s", user["id"])
    return envelope(201, "Регистрация успешна", user)

@router.post("/auth/login", tags=["Auth"])
async def login(
    data: LoginModel,
    store: TaskStore = Depends(get_store),
    verifier: CredentialVerifier = Depends(get_verifier),
):
    """Вход в систему: выдаёт токен на час"""
    user = await asyncio.to_thread(store.get_user_by_username, data.username)
    if not user or not await asyncio.to_thread(
        verify_password, data.password, user["password_hash"], user["password_salt"]
    ):
        raise Unauthenticated("Неверное имя пользователя или пароль")

    token = verifier.issue(user["id"])
    return envelope(200, "Вход выполнен", {
        "token": token,
        "user_id": user["id"],
        "username": user["username"],
        "expires_in": verifier.ttl_seconds,
    })

# ─────────────────────────────────────────
#  ПРОФИЛЬ
# ─────────────────────────────────────────

@router.get("/user/profile", tags=["User"])
async def get_profile(ctx: RequestContext = Depends(get_current_subject), store: TaskStore = Depends(get_store)):
    """Информация о текущем пользователе"""
    user = store.get_user(ctx.owner_id)
    if not user:
        raise NotFound("Пользователь не найден")
    return envelope(200, None, user)

@router.put("/user/profile", tags=["User"])
async def update_profile(
    data: RegisterModel,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Обновить имя, email и пароль"""
    if await asyncio.to_thread(store.find_user_conflict, data.username, data.email, ctx.owner_id):
        raise Conflict("Имя пользователя или email уже заняты")
    pwd_hash, pwd_salt = await asyncio.to_thread(hash_password, data.password)
    user = await asyncio.to_thread(
        store.update_user, ctx.owner_id, data.username, data.email, pwd_hash, pwd_salt
    )
    return envelope(200, "Профиль обновлён", user)

@router.delete("/user/profile", tags=["User"])
async def delete_profile(ctx: RequestContext = Depends(get_current_subject), store: TaskStore = Depends(get_store)):
    """Удалить пользователя вместе с задачами и категориями"""
    user = store.delete_user(ctx.owner_id)
    if not user:
        raise NotFound("Пользователь не найден")
    logger.info("Удалён пользователь id=%s", user["id"])
    return envelope(200, f"Пользователь {user['username']} удалён", user)

# ─────────────────────────────────────────
#  ЗАДАЧИ: фильтры по статусу, приоритету и сроку
# ─────────────────────────────────────────

@router.get("/user/tasks", tags=["Tasks"])
async def get_tasks(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    due_date: Optional[str] = Query(None, alias="dueDate"),
    from_date: Optional[str] = Query(None, alias="fromDate"),
    to_date: Optional[str] = Query(None, alias="toDate"),
    before_date: Optional[str] = Query(None, alias="beforeDate"),
    after_date: Optional[str] = Query(None, alias="afterDate"),
    ctx: RequestContext = Depends(get_current_subject),
    queries: TaskQueryHandler = Depends(get_task_queries),
):
    """
    Получить задачи с фильтрацией:
    - status: PENDING, IN_PROGRESS, COMPLETED
    - priority: LOW, MEDIUM, HIGH
    - dueDate: точная дата срока
    - fromDate / toDate: диапазон включительно (важнее dueDate)
    - beforeDate / afterDate: строгие границы, добавляются к остальным
    """
    criteria = TaskFilterCriteria(
        status=status,
        priority=priority,
        due_date=due_date,
        from_date=from_date,
        to_date=to_date,
        before_date=before_date,
        after_date=after_date,
    )
    tasks = await queries.list_tasks(ctx, criteria)
    message = "Задачи получены" if tasks else "Нет задач по заданным фильтрам"
    return envelope(200, message, tasks)

@router.get("/user/tasks/{task_id}", tags=["Tasks"])
async def get_task(
    task_id: TaskId,
    ctx: RequestContext = Depends(get_current_subject),
    queries: TaskQueryHandler = Depends(get_task_queries),
):
    """Получить одну задачу по ID"""
    task = await queries.get_task(ctx, task_id)
    return envelope(200, "Задача получена", task)

@router.post("/user/tasks", tags=["Tasks"])
async def create_task(
    data: TaskCreate,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Создать задачу"""
    task = store.create_task(
        ctx.owner_id, data.title, data.description, data.due_date, data.status.value, data.priority.value
    )
    return envelope(201, "Задача создана", task)

@router.put("/user/tasks/{task_id}", tags=["Tasks"])
async def update_task(
    task_id: TaskId,
    data: TaskUpdate,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Обновить задачу (частично)"""
    fields = {}
    if data.title is not None:
        fields["title"] = data.title
    if data.description is not None:
        fields["description"] = data.description
    if data.due_date is not None:
        fields["due_date"] = data.due_date
    if data.status is not None:
        fields["status"] = data.status.value
    if data.priority is not None:
        fields["priority"] = data.priority.value

    task = store.update_task(ctx.owner_id, task_id, fields)
    if not task:
        raise NotFound("Задача не найдена")
    return envelope(200, "Задача обновлена", task)

@router.patch("/user/tasks/{task_id}/status", tags=["Tasks"])
async def change_task_status(
    task_id: TaskId,
    data: StatusUpdate,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Сменить только статус задачи"""
    task = store.update_task(ctx.owner_id, task_id, {"status": data.status.value})
    if not task:
        raise NotFound("Задача не найдена")
    return envelope(200, "Статус задачи обновлён", task)

@router.delete("/user/tasks/{task_id}", tags=["Tasks"])
async def delete_task(
    task_id: TaskId,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Удалить задачу"""
    if not store.delete_task(ctx.owner_id, task_id):
        raise NotFound("Задача не найдена")
    return envelope(200, "Задача удалена")

# ─────────────────────────────────────────
#  КАТЕГОРИИ
# ─────────────────────────────────────────

@router.get("/user/category", tags=["Categories"])
async def get_categories(ctx: RequestContext = Depends(get_current_subject), store: TaskStore = Depends(get_store)):
    """Список категорий текущего пользователя"""
    return envelope(200, "Категории получены", store.list_categories(ctx.owner_id))

@router.post("/user/category", tags=["Categories"])
async def create_category(
    data: CategoryCreate,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Создать категорию"""
    if store.category_name_taken(ctx.owner_id, data.name):
        raise Conflict("Категория с таким именем уже существует")
    return envelope(201, "Категория создана", store.create_category(ctx.owner_id, data.name))

@router.get("/user/category/{category_id}", tags=["Categories"])
async def get_category(
    category_id: CategoryId,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    cat = store.get_category(ctx.owner_id, category_id)
    if not cat:
        raise NotFound("Категория не найдена")
    return envelope(200, "Категория получена", cat)

@router.put("/user/category/{category_id}", tags=["Categories"])
async def update_category(
    category_id: CategoryId,
    data: CategoryUpdate,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Переименовать категорию; без name остаётся как было"""
    cat = store.get_category(ctx.owner_id, category_id)
    if not cat:
        raise NotFound("Категория не найдена")
    if data.name is None or data.name == cat["name"]:
        return envelope(200, "Категория обновлена", cat)
    if store.category_name_taken(ctx.owner_id, data.name, exclude_id=category_id):
        raise Conflict("Категория с таким именем уже существует")
    return envelope(200, "Категория обновлена", store.rename_category(ctx.owner_id, category_id, data.name))

@router.delete("/user/category/{category_id}", tags=["Categories"])
async def delete_category(
    category_id: CategoryId,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Удалить категорию"""
    if not store.delete_category(ctx.owner_id, category_id):
        raise NotFound("Категория не найдена")
    return envelope(200, "Категория удалена")

# ─────────────────────────────────────────
#  ЗАДАЧИ ↔ КАТЕГОРИИ
# ─────────────────────────────────────────

def _owned_pair(store: TaskStore, owner_id: int, task_id: int, category_id: int) -> None:
    """Задача и категория обе должны принадлежать владельцу"""
    if not store.get_task(owner_id, task_id) or not store.get_category(owner_id, category_id):
        raise NotFound("Задача или категория не найдена")

@router.get("/user/task-categories", tags=["TaskCategories"])
async def get_task_categories(ctx: RequestContext = Depends(get_current_subject), store: TaskStore = Depends(get_store)):
    """Задачи пользователя с названиями их категорий"""
    return envelope(200, "Запрос выполнен", store.tasks_with_categories(ctx.owner_id))

@router.post("/user/task-categories", tags=["TaskCategories"])
async def create_task_category(
    data: TaskCategoryCreate,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Привязать категорию к задаче"""
    _owned_pair(store, ctx.owner_id, data.task_id, data.category_id)
    if store.link_exists(data.task_id, data.category_id):
        raise Conflict("Категория уже привязана к задаче")
    return envelope(201, "Категория привязана", store.create_link(data.task_id, data.category_id))

@router.put("/user/task-categories/{link_id}", tags=["TaskCategories"])
async def update_task_category(
    link_id: LinkId,
    data: TaskCategoryUpdate,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    link = store.get_link(ctx.owner_id, link_id)
    if not link:
        raise NotFound("Связь не найдена")
    task_id = data.task_id if data.task_id is not None else link["task_id"]
    category_id = data.category_id if data.category_id is not None else link["category_id"]
    _owned_pair(store, ctx.owner_id, task_id, category_id)
    if store.link_exists(task_id, category_id, exclude_id=link_id):
        raise Conflict("Категория уже привязана к задаче")
    return envelope(200, "Связь обновлена", store.update_link(link_id, task_id, category_id))

@router.delete("/user/task-categories/{link_id}", tags=["TaskCategories"])
async def delete_task_category(
    link_id: LinkId,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    if not store.get_link(ctx.owner_id, link_id):
        raise NotFound("Связь не найдена")
    store.delete_link(link_id)
    return envelope(200, "Связь удалена")

@router.get("/user/{task_id}/categories", tags=["TaskCategories"])
async def get_categories_by_task(
    task_id: TaskId,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Названия категорий одной задачи"""
    task = store.get_task(ctx.owner_id, task_id)
    if not task:
        raise NotFound("Задача не найдена")
    return envelope(200, "Запрос выполнен", {
        "task_id": task_id,
        "task_title": task["title"],
        "categories": store.categories_for_task(task_id),
    })

@router.get("/user/{category_id}/tasks", tags=["TaskCategories"])
async def get_tasks_by_category(
    category_id: CategoryId,
    ctx: RequestContext = Depends(get_current_subject),
    store: TaskStore = Depends(get_store),
):
    """Задачи, привязанные к категории"""
    if not store.get_category(ctx.owner_id, category_id):
        raise NotFound("Категория не найдена")
    return envelope(200, "Запрос выполнен", {
        "category_id": category_id,
        "tasks": store.tasks_for_category(category_id),
    })

# ─────────────────────────────────────────
#  ПРИЛОЖЕНИЕ
# ─────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    if settings.log_console:
        setup_logging(settings.log_level)

    store = TaskStore(settings.db_path)
    store.init_schema()
    verifier = CredentialVerifier(
        settings.jwt_secret,
        ttl_seconds=settings.token_ttl_seconds,
        timeout=settings.verify_timeout_seconds,
    )
    app.state.store = store
    app.state.verifier = verifier
    app.state.auth_gate = AuthGate(verifier, subject_exists=store.user_exists)
    app.state.task_queries = TaskQueryHandler(store, timeout=settings.query_timeout_seconds)
    logger.info("%s запущен", settings.app_name)
    yield

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return envelope(exc.status_code, exc.message, error=exc.kind)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else HTTPStatus(exc.status_code).phrase
        if exc.status_code == 404 and message == "Not Found":
            message = "Страница не найдена"
        return envelope(exc.status_code, message, error=HTTPStatus(exc.status_code).phrase)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{where}: {first.get('msg', 'некорректный запрос')}" if where else first.get("msg", "некорректный запрос")
        return envelope(400, message, error="ValidationError")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Необработанная ошибка на %s %s", request.method, request.url.path)
        return envelope(500, "Внутренняя ошибка сервера", error="InternalError")

    app.include_router(router)
    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(app, host=_settings.host, port=_settings.port)
