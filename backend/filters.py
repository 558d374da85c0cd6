"""Компиляция фильтров списка задач.

Сырые значения из query string (все необязательные) превращаются в один
CompositeTaskFilter. Проверка идёт строго по порядку: status → priority →
dueDate → fromDate/toDate → beforeDate → afterDate; первая ошибка
останавливает компиляцию.

Правила для dueDate:
- только dueDate → точное совпадение;
- fromDate/toDate → диапазон gte/lte, заменяет точное совпадение;
- beforeDate/afterDate → добавляют lt/gt к уже собранному ограничению;
  точное значение при этом превращается в {gte: v, lte: v}, чтобы не потеряться.
Пустой интервал (afterDate > beforeDate) не ошибка: он просто ничего не найдёт.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from errors import InvalidFilterValue


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    try:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    except OverflowError:
        # 9999-12-31T23:00-05:00 и т.п. не помещаются в datetime после перевода в UTC
        raise ValueError(f"дата вне допустимого диапазона: {value.isoformat()}") from None


def parse_timestamp(raw: str) -> datetime:
    """ISO-дата или дата-время → наивное UTC. Дата без времени = полночь."""
    return to_naive_utc(datetime.fromisoformat(raw.strip()))


def format_timestamp(value: datetime) -> str:
    """
    Формат фиксированной ширины: строки сравниваются как даты.
    Год всегда из четырёх цифр, strftime("%Y") на Linux его не дополняет.
    """
    return to_naive_utc(value).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class TaskFilterCriteria:
    status: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[str] = None
    from_date: Optional[str] = None
    to_date: Optional[str] = None
    before_date: Optional[str] = None
    after_date: Optional[str] = None


@dataclass(frozen=True)
class DueDateConstraint:
    equals: Optional[datetime] = None
    gte: Optional[datetime] = None
    lte: Optional[datetime] = None
    lt: Optional[datetime] = None
    gt: Optional[datetime] = None

    @property
    def is_exact(self) -> bool:
        return self.equals is not None

    def bounds(self) -> Dict[str, datetime]:
        return {
            op: v
            for op, v in (("gte", self.gte), ("lte", self.lte), ("lt", self.lt), ("gt", self.gt))
            if v is not None
        }


@dataclass(frozen=True)
class CompositeTaskFilter:
    owner_id: int
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[DueDateConstraint] = None


@dataclass
class DueDateBuilder:
    """Состояния: пусто → точное значение → набор границ"""

    exact_value: Optional[datetime] = None
    bound_values: Dict[str, datetime] = field(default_factory=dict)

    def exact(self, value: datetime) -> None:
        self.exact_value = value
        self.bound_values = {}

    def range(self, gte: Optional[datetime], lte: Optional[datetime]) -> None:
        self.exact_value = None
        self.bound_values = {}
        if gte is not None:
            self.bound_values["gte"] = gte
        if lte is not None:
            self.bound_values["lte"] = lte

    def bound(self, op: str, value: datetime) -> None:
        if self.exact_value is not None:
            self.bound_values = {"gte": self.exact_value, "lte": self.exact_value}
            self.exact_value = None
        self.bound_values[op] = value

    def build(self) -> Optional[DueDateConstraint]:
        if self.exact_value is not None:
            return DueDateConstraint(equals=self.exact_value)
        if self.bound_values:
            return DueDateConstraint(**self.bound_values)
        return None


def _present(raw: Optional[str]) -> bool:
    return raw is not None and raw.strip() != ""


def _parse_enum(enum_cls, field_name: str, raw: str):
    try:
        return enum_cls(raw.strip())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidFilterValue(
            field_name, raw, f"Недопустимое значение {field_name}. Допустимо: {allowed}"
        ) from None


def _parse_date(field_name: str, raw: str) -> datetime:
    try:
        return parse_timestamp(raw)
    except ValueError:
        raise InvalidFilterValue(
            field_name, raw, f"Недопустимое значение {field_name}. Укажите корректную дату."
        ) from None


def compile_task_filter(owner_id: int, criteria: TaskFilterCriteria) -> CompositeTaskFilter:
    """Собрать фильтр задач владельца owner_id. owner_id берётся только из контекста запроса."""
    status = None
    priority = None
    due = DueDateBuilder()

    if _present(criteria.status):
        status = _parse_enum(TaskStatus, "status", criteria.status)
    if _present(criteria.priority):
        priority = _parse_enum(TaskPriority, "priority", criteria.priority)

    if _present(criteria.due_date):
        due.exact(_parse_date("dueDate", criteria.due_date))

    if _present(criteria.from_date) or _present(criteria.to_date):
        gte = _parse_date("fromDate", criteria.from_date) if _present(criteria.from_date) else None
        lte = _parse_date("toDate", criteria.to_date) if _present(criteria.to_date) else None
        due.range(gte, lte)

    if _present(criteria.before_date):
        due.bound("lt", _parse_date("beforeDate", criteria.before_date))
    if _present(criteria.after_date):
        due.bound("gt", _parse_date("afterDate", criteria.after_date))

    return CompositeTaskFilter(owner_id=owner_id, status=status, priority=priority, due_date=due.build())
