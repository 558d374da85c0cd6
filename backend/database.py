import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from filters import CompositeTaskFilter, format_timestamp

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        username      TEXT    NOT NULL UNIQUE,
        email         TEXT    NOT NULL UNIQUE,
        password_hash TEXT    NOT NULL,
        password_salt TEXT    NOT NULL DEFAULT '',
        created_at    TEXT    DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
    )
    """,
    # Имя категории уникально в пределах владельца
    """
    CREATE TABLE IF NOT EXISTS categories (
        id      INTEGER PRIMARY KEY AUTOINCREMENT,
        name    TEXT    NOT NULL,
        user_id INTEGER NOT NULL,
        UNIQUE (name, user_id),
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        title       TEXT    NOT NULL,
        description TEXT,
        due_date    TEXT    NOT NULL,
        status      TEXT    NOT NULL DEFAULT 'PENDING',
        priority    TEXT    NOT NULL DEFAULT 'MEDIUM',
        user_id     INTEGER NOT NULL,
        created_at  TEXT    DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
        updated_at  TEXT    DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_categories (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id     INTEGER NOT NULL,
        category_id INTEGER NOT NULL,
        UNIQUE (task_id, category_id),
        FOREIGN KEY (task_id)     REFERENCES tasks(id)      ON DELETE CASCADE,
        FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_user_due ON tasks(user_id, due_date)",
)

USER_COLUMNS = "id, username, email, created_at"
TASK_COLUMNS = "id, title, description, due_date, status, priority, user_id, created_at, updated_at"

# Операторы границ для due_date; ключи совпадают с DueDateConstraint.bounds()
_BOUND_SQL = {"gte": ">=", "lte": "<=", "lt": "<", "gt": ">"}


class TaskStore:
    """
    Хранилище на sqlite3: короткое соединение на каждый вызов,
    поэтому методы можно звать из пула потоков.
    """

    def __init__(self, db_path: str | Path):
        self._db_path = str(db_path)

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self._db() as db:
            for stmt in SCHEMA:
                db.execute(stmt)
        logger.info("TaskStore готов db=%s", self._db_path)

    # ─────────────────────────────────────────
    #  ПОЛЬЗОВАТЕЛИ
    # ─────────────────────────────────────────

    def create_user(self, username: str, email: str, pwd_hash: str, pwd_salt: str) -> Dict[str, Any]:
        with self._db() as db:
            cursor = db.execute(
                "INSERT INTO users (username, email, password_hash, password_salt) VALUES (?, ?, ?, ?)",
                (username, email, pwd_hash, pwd_salt),
            )
            row = db.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return dict(row)

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self._db() as db:
            row = db.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        """Вместе с хешем пароля: только для входа"""
        with self._db() as db:
            row = db.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        return dict(row) if row else None

    def find_user_conflict(self, username: str, email: str, exclude_id: Optional[int] = None) -> bool:
        with self._db() as db:
            row = db.execute(
                "SELECT id FROM users WHERE (username = ? OR email = ?) AND id != ?",
                (username, email, exclude_id if exclude_id is not None else -1),
            ).fetchone()
        return row is not None

    def user_exists(self, user_id: int) -> bool:
        with self._db() as db:
            row = db.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone()
        return row is not None

    def update_user(self, user_id: int, username: str, email: str, pwd_hash: str, pwd_salt: str) -> Dict[str, Any]:
        with self._db() as db:
            db.execute(
                "UPDATE users SET username = ?, email = ?, password_hash = ?, password_salt = ? WHERE id = ?",
                (username, email, pwd_hash, pwd_salt, user_id),
            )
            row = db.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row)

    def delete_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self._db() as db:
            row = db.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
            if not row:
                return None
            db.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return dict(row)

    # ─────────────────────────────────────────
    #  ЗАДАЧИ
    # ─────────────────────────────────────────

    def create_task(
        self,
        owner_id: int,
        title: str,
        description: Optional[str],
        due_date: datetime,
        status: str,
        priority: str,
    ) -> Dict[str, Any]:
        with self._db() as db:
            cursor = db.execute(
                "INSERT INTO tasks (title, description, due_date, status, priority, user_id) VALUES (?,?,?,?,?,?)",
                (title, description, format_timestamp(due_date), status, priority, owner_id),
            )
            row = db.execute(f"SELECT {TASK_COLUMNS} FROM tasks WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return dict(row)

    def find_tasks(self, flt: CompositeTaskFilter) -> List[Dict[str, Any]]:
        """Все задачи владельца, подходящие под скомпилированный фильтр"""
        query = f"SELECT {TASK_COLUMNS} FROM tasks WHERE user_id = ?"
        params: list = [flt.owner_id]

        if flt.status is not None:
            query += " AND status = ?"
            params.append(flt.status.value)
        if flt.priority is not None:
            query += " AND priority = ?"
            params.append(flt.priority.value)
        if flt.due_date is not None:
            if flt.due_date.is_exact:
                query += " AND due_date = ?"
                params.append(format_timestamp(flt.due_date.equals))
            for op, value in flt.due_date.bounds().items():
                query += f" AND due_date {_BOUND_SQL[op]} ?"
                params.append(format_timestamp(value))

        query += " ORDER BY due_date, id"
        with self._db() as db:
            rows = db.execute(query, params).fetchall()
        return [dict(r) for r in rows]

    def get_task(self, owner_id: int, task_id: int) -> Optional[Dict[str, Any]]:
        with self._db() as db:
            row = db.execute(
                f"SELECT {TASK_COLUMNS} FROM tasks WHERE id = ? AND user_id = ?",
                (task_id, owner_id),
            ).fetchone()
        return dict(row) if row else None

    def update_task(self, owner_id: int, task_id: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Частичное обновление; None если задача не найдена у владельца"""
        updates = []
        params: list = []
        for column in ("title", "description", "due_date", "status", "priority"):
            if column not in fields:
                continue
            value = fields[column]
            if isinstance(value, datetime):
                value = format_timestamp(value)
            updates.append(f"{column} = ?")
            params.append(value)

        with self._db() as db:
            if updates:
                updates.append("updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')")
                params.extend([task_id, owner_id])
                db.execute(f"UPDATE tasks SET {', '.join(updates)} WHERE id = ? AND user_id = ?", params)
            row = db.execute(
                f"SELECT {TASK_COLUMNS} FROM tasks WHERE id = ? AND user_id = ?",
                (task_id, owner_id),
            ).fetchone()
        return dict(row) if row else None

    def delete_task(self, owner_id: int, task_id: int) -> bool:
        with self._db() as db:
            cursor = db.execute("DELETE FROM tasks WHERE id = ? AND user_id = ?", (task_id, owner_id))
        return cursor.rowcount > 0

    # ─────────────────────────────────────────
    #  КАТЕГОРИИ
    # ─────────────────────────────────────────

    def create_category(self, owner_id: int, name: str) -> Dict[str, Any]:
        with self._db() as db:
            cursor = db.execute("INSERT INTO categories (name, user_id) VALUES (?, ?)", (name, owner_id))
        return {"id": cursor.lastrowid, "name": name, "user_id": owner_id}

    def list_categories(self, owner_id: int) -> List[Dict[str, Any]]:
        with self._db() as db:
            rows = db.execute("SELECT * FROM categories WHERE user_id = ? ORDER BY name", (owner_id,)).fetchall()
        return [dict(r) for r in rows]

    def get_category(self, owner_id: int, category_id: int) -> Optional[Dict[str, Any]]:
        with self._db() as db:
            row = db.execute(
                "SELECT * FROM categories WHERE id = ? AND user_id = ?",
                (category_id, owner_id),
            ).fetchone()
        return dict(row) if row else None

    def category_name_taken(self, owner_id: int, name: str, exclude_id: Optional[int] = None) -> bool:
        with self._db() as db:
            row = db.execute(
                "SELECT id FROM categories WHERE name = ? AND user_id = ? AND id != ?",
                (name, owner_id, exclude_id if exclude_id is not None else -1),
            ).fetchone()
        return row is not None

    def rename_category(self, owner_id: int, category_id: int, name: str) -> Optional[Dict[str, Any]]:
        with self._db() as db:
            db.execute("UPDATE categories SET name = ? WHERE id = ? AND user_id = ?", (name, category_id, owner_id))
            row = db.execute(
                "SELECT * FROM categories WHERE id = ? AND user_id = ?",
                (category_id, owner_id),
            ).fetchone()
        return dict(row) if row else None

    def delete_category(self, owner_id: int, category_id: int) -> bool:
        with self._db() as db:
            cursor = db.execute("DELETE FROM categories WHERE id = ? AND user_id = ?", (category_id, owner_id))
        return cursor.rowcount > 0

    # ─────────────────────────────────────────
    #  СВЯЗИ ЗАДАЧА ↔ КАТЕГОРИЯ
    # ─────────────────────────────────────────

    def link_exists(self, task_id: int, category_id: int, exclude_id: Optional[int] = None) -> bool:
        with self._db() as db:
            row = db.execute(
                "SELECT id FROM task_categories WHERE task_id = ? AND category_id = ? AND id != ?",
                (task_id, category_id, exclude_id if exclude_id is not None else -1),
            ).fetchone()
        return row is not None

    def create_link(self, task_id: int, category_id: int) -> Dict[str, Any]:
        with self._db() as db:
            cursor = db.execute(
                "INSERT INTO task_categories (task_id, category_id) VALUES (?, ?)",
                (task_id, category_id),
            )
        return {"id": cursor.lastrowid, "task_id": task_id, "category_id": category_id}

    def get_link(self, owner_id: int, link_id: int) -> Optional[Dict[str, Any]]:
        """Связь видна владельцу, только если ему принадлежит задача"""
        with self._db() as db:
            row = db.execute(
                """SELECT tc.id, tc.task_id, tc.category_id FROM task_categories tc
                   JOIN tasks t ON tc.task_id = t.id
                   WHERE tc.id = ? AND t.user_id = ?""",
                (link_id, owner_id),
            ).fetchone()
        return dict(row) if row else None

    def update_link(self, link_id: int, task_id: int, category_id: int) -> Dict[str, Any]:
        with self._db() as db:
            db.execute(
                "UPDATE task_categories SET task_id = ?, category_id = ? WHERE id = ?",
                (task_id, category_id, link_id),
            )
        return {"id": link_id, "task_id": task_id, "category_id": category_id}

    def delete_link(self, link_id: int) -> None:
        with self._db() as db:
            db.execute("DELETE FROM task_categories WHERE id = ?", (link_id,))

    def tasks_with_categories(self, owner_id: int) -> List[Dict[str, Any]]:
        with self._db() as db:
            rows = db.execute(
                """SELECT t.id, t.title, c.name AS category_name FROM tasks t
                   LEFT JOIN task_categories tc ON tc.task_id = t.id
                   LEFT JOIN categories c ON tc.category_id = c.id
                   WHERE t.user_id = ?
                   ORDER BY t.id, c.name""",
                (owner_id,),
            ).fetchall()
        grouped: Dict[int, Dict[str, Any]] = {}
        for r in rows:
            item = grouped.setdefault(r["id"], {"task_id": r["id"], "task_title": r["title"], "categories": []})
            if r["category_name"] is not None:
                item["categories"].append(r["category_name"])
        return list(grouped.values())

    def categories_for_task(self, task_id: int) -> List[str]:
        with self._db() as db:
            rows = db.execute(
                """SELECT c.name FROM task_categories tc
                   JOIN categories c ON tc.category_id = c.id
                   WHERE tc.task_id = ? ORDER BY c.name""",
                (task_id,),
            ).fetchall()
        return [r["name"] for r in rows]

    def tasks_for_category(self, category_id: int) -> List[Dict[str, Any]]:
        with self._db() as db:
            rows = db.execute(
                """SELECT t.id AS task_id, t.title FROM task_categories tc
                   JOIN tasks t ON tc.task_id = t.id
                   WHERE tc.category_id = ? ORDER BY t.id""",
                (category_id,),
            ).fetchall()
        return [dict(r) for r in rows]
