# util/enums.py
from enum import Enum
from typing import NamedTuple
from fastapi import status


class Color(str, Enum):
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    BOLD = "\033[1m"

    def __str__(self):
        return self.value


class Environment(str, Enum):
    DEV = "dev"
    PROD = "prod"


class EventType(str, Enum):
    THINKING = "thinking"
    RESPONSE = "response"
    SOURCE = "source"
    DONE = "done"


class ErrorInfo(NamedTuple):
    message: str
    http_status: int


class ErrorMessage(Enum):
    MISSING_TOKEN = ErrorInfo("Missing bearer token", status.HTTP_401_UNAUTHORIZED)
    INVALID_TOKEN = ErrorInfo("Invalid or expired token", status.HTTP_401_UNAUTHORIZED)
    IDENTITY_UNAVAILABLE = ErrorInfo(
        "Identity provider unavailable", status.HTTP_502_BAD_GATEWAY
    )
