# utils/port_utils.py
import logging
from typing import Any

from core.errors import ValidationError

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535


def is_valid_port(port: Any) -> bool:
    """Проверяет, что порт - целое число в диапазоне 1-65535"""
    if isinstance(port, bool) or not isinstance(port, int):
        return False
    return MIN_PORT <= port <= MAX_PORT


def validate_port(port: Any, field: str = "port") -> int:
    """Возвращает порт или бросает ValidationError"""
    if not is_valid_port(port):
        logger.debug(f"Некорректный порт {field}={port!r}")
        raise ValidationError(
            f"Port must be a number between {MIN_PORT}-{MAX_PORT}, got {port!r}",
            field=field,
        )
    return port


def validate_port_range(start: Any, end: Any) -> tuple[int, int]:
    """Проверяет диапазон портов пула: оба порта валидны и start <= end"""
    validate_port(start, field="port_range.start")
    validate_port(end, field="port_range.end")
    if start > end:
        raise ValidationError(
            f"Port range start ({start}) must not exceed end ({end})",
            field="port_range",
        )
    return start, end
