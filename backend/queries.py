import asyncio
import logging
from typing import Any, Dict, List

from database import TaskStore
from errors import InvalidFilterValue, NotFound, UpstreamTimeout
from filters import TaskFilterCriteria, compile_task_filter
from security import RequestContext

logger = logging.getLogger(__name__)


class TaskQueryHandler:
    """Чтение задач владельца: список по фильтру и одна задача по id"""

    def __init__(self, store: TaskStore, timeout: float = 10.0):
        self._store = store
        self._timeout = timeout

    async def _run(self, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), self._timeout)
        except TimeoutError:
            logger.warning("Запрос к хранилищу %s превысил %.1fs", fn.__name__, self._timeout)
            raise UpstreamTimeout("Хранилище не ответило вовремя")

    async def list_tasks(self, ctx: RequestContext, criteria: TaskFilterCriteria) -> List[Dict[str, Any]]:
        """Пустой результат не ошибка: возвращается пустой список"""
        try:
            flt = compile_task_filter(ctx.owner_id, criteria)
        except InvalidFilterValue as exc:
            logger.info("Фильтр отклонён: %s=%r", exc.field, exc.value)
            raise
        logger.debug("Фильтр задач: %s", flt)
        return await self._run(self._store.find_tasks, flt)

    async def get_task(self, ctx: RequestContext, task_id: int) -> Dict[str, Any]:
        task = await self._run(self._store.get_task, ctx.owner_id, task_id)
        if task is None:
            raise NotFound("Задача не найдена")
        return task
