from datetime import datetime, timezone
from urllib.parse import quote


def utc_now() -> datetime:
    """Текущее время в UTC (timezone-aware)"""
    return datetime.now(timezone.utc)


def content_disposition(filename: str) -> str:
    """Заголовок Content-Disposition для скачивания файла"""
    fallback = filename.encode("ascii", "replace").decode("ascii")
    fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
    header = f'attachment; filename="{fallback}"'
    # Заголовки уходят в latin-1, поэтому не-ASCII имя передаём по RFC 5987
    if not filename.isascii():
        header += f"; filename*=UTF-8''{quote(filename, safe='')}"
    return header
