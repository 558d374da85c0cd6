"""Пароли, JWT-токены и шлюз аутентификации.

Шлюз (AuthGate) ждёт результата проверки токена и только потом отдаёт
обработчику RequestContext с прикреплённым subject_id. Обработчик не
может получить контекст без подтверждённой личности.
"""

import asyncio
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import jwt
from fastapi.security import HTTPAuthorizationCredentials

from errors import Forbidden, Unauthenticated, UpstreamTimeout

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

# ─────────────────────────────────────────
#  ПАРОЛИ
# ─────────────────────────────────────────

def hash_password(password: str, salt: str | None = None) -> tuple[str, str]:
    """PBKDF2-HMAC-SHA256 хеш пароля с уникальной солью"""
    if salt is None:
        salt = secrets.token_hex(16)
    key = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 260_000)
    return key.hex(), salt

def verify_password(password: str, stored_hash: str, salt: str) -> bool:
    return secrets.compare_digest(hash_password(password, salt)[0], stored_hash)

# ─────────────────────────────────────────
#  ТОКЕНЫ
# ─────────────────────────────────────────

class TokenStatus(str, Enum):
    VALID = "valid"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class Verification:
    status: TokenStatus
    subject_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status is TokenStatus.VALID


class CredentialVerifier:
    """Выпуск и проверка подписанных токенов одним серверным секретом"""

    def __init__(self, secret: str, *, ttl_seconds: int = 3600, timeout: float = 5.0):
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout

    def issue(self, subject_id: int, ttl_seconds: Optional[int] = None) -> str:
        now = int(time.time())
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        payload = {"id": subject_id, "iat": now, "exp": now + ttl}
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def check(self, token: str) -> Verification:
        """Синхронная проверка: подпись, срок действия, целочисленный id"""
        try:
            data = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "id"]},
            )
        except jwt.ExpiredSignatureError:
            return Verification(TokenStatus.EXPIRED)
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError):
            return Verification(TokenStatus.INVALID_SIGNATURE)
        except jwt.InvalidTokenError:
            return Verification(TokenStatus.MALFORMED)

        subject_id = data.get("id")
        if isinstance(subject_id, bool) or not isinstance(subject_id, int):
            return Verification(TokenStatus.MALFORMED)
        return Verification(TokenStatus.VALID, subject_id)

    async def verify(self, token: str) -> Verification:
        """
        Проверка в пуле потоков с ограничением по времени.
        Результат доступен только после await; при таймауте TimeoutError.
        """
        return await asyncio.wait_for(asyncio.to_thread(self.check, token), self.timeout)

# ─────────────────────────────────────────
#  КОНТЕКСТ ЗАПРОСА И ШЛЮЗ
# ─────────────────────────────────────────

@dataclass
class RequestContext:
    """Принадлежит одному запросу; subject_id прикрепляется не более одного раза"""

    subject_id: Optional[int] = None

    def attach(self, subject_id: int) -> None:
        if self.subject_id is not None:
            raise RuntimeError("subject_id уже прикреплён к контексту запроса")
        self.subject_id = subject_id

    @property
    def owner_id(self) -> int:
        if self.subject_id is None:
            raise Unauthenticated("Требуется авторизация")
        return self.subject_id


class AuthGate:
    """
    Пропускает запрос дальше только с проверенной личностью.

    - нет заголовка или схема не Bearer → 401
    - токен не разбирается → 401
    - неверная подпись или истёк срок → 403
    - пользователь из токена удалён → 401
    - проверка не уложилась в таймаут → 504
    """

    def __init__(
        self,
        verifier: CredentialVerifier,
        subject_exists: Optional[Callable[[int], bool]] = None,
    ):
        self._verifier = verifier
        self._subject_exists = subject_exists

    async def open(self, credentials: Optional[HTTPAuthorizationCredentials]) -> RequestContext:
        ctx = RequestContext()
        if (
            credentials is None
            or credentials.scheme.lower() != "bearer"
            or not credentials.credentials
        ):
            logger.info("Отказ: токен не передан")
            raise Unauthenticated("Токен не передан")

        try:
            outcome = await self._verifier.verify(credentials.credentials)
        except TimeoutError:
            logger.warning("Проверка токена превысила %.1fs", self._verifier.timeout)
            raise UpstreamTimeout("Проверка токена заняла слишком много времени")

        if outcome.status is TokenStatus.MALFORMED:
            logger.info("Отказ: токен повреждён")
            raise Unauthenticated("Недействительный токен")
        if outcome.status is TokenStatus.EXPIRED:
            logger.info("Отказ: срок действия токена истёк")
            raise Forbidden("Срок действия токена истёк")
        if outcome.status is TokenStatus.INVALID_SIGNATURE:
            logger.info("Отказ: неверная подпись токена")
            raise Forbidden("Неверная подпись токена")

        if self._subject_exists is not None:
            exists = await asyncio.to_thread(self._subject_exists, outcome.subject_id)
            if not exists:
                logger.info("Отказ: пользователь id=%s не найден", outcome.subject_id)
                raise Unauthenticated("Пользователь не найден")

        ctx.attach(outcome.subject_id)
        return ctx
