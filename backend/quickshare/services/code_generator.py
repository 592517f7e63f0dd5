import re
import secrets
from quickshare.core.exceptions import InvalidReferenceError

CODE_LENGTH = 6
CODE_PATTERN = re.compile(r"^[0-9A-F]{6}$")


def generate_code() -> str:
    """Короткий код передачи: 3 случайных байта -> 6 hex-символов в верхнем регистре"""
    return secrets.token_hex(CODE_LENGTH // 2).upper()


def normalize_code(raw: str) -> str:
    """Приводит введённый пользователем код к каноническому виду"""
    code = (raw or "").strip().upper()
    if not CODE_PATTERN.match(code):
        raise InvalidReferenceError(f"Invalid transfer code format: {raw!r}")
    return code
