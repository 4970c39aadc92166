"""
SessionStore - единственный владелец текущей сессии.

Сессия живет в памяти и дублируется в JSON файл с фиксированными ключами
accessToken / refreshToken / user, чтобы пережить перезапуск процесса.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from core.errors import ValidationError
from core.models import Session

logger = logging.getLogger(__name__)

STORAGE_KEYS = ('accessToken', 'refreshToken', 'user')


class SessionStore:
    """Хранилище сессии: initialize / commit / clear / current"""

    def __init__(self, storage_path: Path):
        """
        Args:
            storage_path: Путь к JSON файлу сессии
        """
        self.storage_path = Path(storage_path)
        self._session: Optional[Session] = None

    def initialize(self) -> Optional[Session]:
        """
        Загрузить сохраненную сессию без обращения к сети.

        Поврежденная запись считается отсутствующей и удаляется.

        Returns:
            Session или None
        """
        if not self.storage_path.exists():
            self._session = None
            return None

        try:
            with open(self.storage_path, 'r', encoding='utf-8') as f:
                record = json.load(f)
            if not isinstance(record, dict) or any(key not in record for key in STORAGE_KEYS):
                raise ValidationError("Session record is missing required keys")
            self._session = Session.from_record(record)
        except (OSError, json.JSONDecodeError, ValidationError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"⚠️ Stored session is corrupt, purging: {e}")
            self._session = None
            self._remove_file()
            return None

        logger.info(f"🔐 Session restored for user={self._session.display_name}")
        return self._session

    def commit(self, session: Session) -> None:
        """
        Атомарно заменить сессию на диске и в памяти.

        Файл пишется во временный файл рядом и переименовывается через os.replace,
        поэтому на диске всегда либо старая, либо новая запись целиком.
        """
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix='.session-', suffix='.tmp', dir=str(self.storage_path.parent)
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(session.to_record(), f, ensure_ascii=False)
            os.replace(tmp_path, self.storage_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        self._session = session
        logger.debug(
            f"🔐 Session committed: user={session.display_name}, "
            f"token length={len(session.access_token)} chars"
        )

    def clear(self) -> None:
        """Удалить сессию из памяти и с диска"""
        self._session = None
        self._remove_file()
        logger.info("🧹 Session cleared")

    def current(self) -> Optional[Session]:
        """Текущая сессия из памяти, без I/O"""
        return self._session

    def _remove_file(self) -> None:
        try:
            self.storage_path.unlink()
        except FileNotFoundError:
            pass
