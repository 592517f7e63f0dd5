from fastapi import status

class AppException(Exception):
    """Базовое исключение для приложения"""
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail

class NotFoundError(AppException):
    """Передача или файл не найдены (или уже удалены по сроку)"""
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status.HTTP_404_NOT_FOUND, detail)

class InvalidReferenceError(AppException):
    """Некорректный код передачи или идентификатор файла"""
    def __init__(self, detail: str = "Invalid reference"):
        super().__init__(status.HTTP_400_BAD_REQUEST, detail)

class DuplicateKeyError(AppException):
    """Код уже занят живой записью"""
    def __init__(self, code: str):
        super().__init__(status.HTTP_409_CONFLICT, f"Transfer code {code} is already taken")
        self.code = code

class CodeSpaceExhaustedError(AppException):
    """Не удалось подобрать свободный код за отведённое число попыток"""
    def __init__(self, attempts: int):
        super().__init__(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            f"Could not allocate a unique transfer code after {attempts} attempts",
        )
        self.attempts = attempts

class StorageWriteFailedError(AppException):
    """Ошибка записи файла или метаданных"""
    def __init__(self, detail: str = "Failed to save transfer. Try uploading again."):
        super().__init__(status.HTTP_500_INTERNAL_SERVER_ERROR, detail)

class ConnectionUnavailableError(AppException):
    """Хранилище недоступно"""
    def __init__(self, detail: str = "Database not connected"):
        super().__init__(status.HTTP_503_SERVICE_UNAVAILABLE, detail)

class StreamClosedError(AppException):
    """Поток чтения файла уже закрыт или прочитан"""
    def __init__(self, blob_id: str):
        super().__init__(status.HTTP_500_INTERNAL_SERVER_ERROR, f"Read stream for file {blob_id} is closed")
        self.blob_id = blob_id
