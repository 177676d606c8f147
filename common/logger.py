import logging
from contextlib import contextmanager
from contextvars import ContextVar
from enum import IntEnum
from typing import Iterator, Optional

FALLBACK_NAME = "reconciler"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(payment)s]: %(message)s"

# ссылка платежа, который сейчас обрабатывается в этой задаче asyncio
_current_payment: ContextVar[str] = ContextVar("current_payment", default="-")


class Level(IntEnum):
    NOTSET = logging.NOTSET
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


class PaymentContextFilter(logging.Filter):
    """Adds ``record.payment`` so formats can print the payment being reconciled."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.payment = _current_payment.get()
        return True


class Logger:
    _logger: Optional[logging.Logger] = None

    @classmethod
    def configure(cls, name: str, level: Level | int, *, fmt: str = DEFAULT_FORMAT) -> None:
        if cls._logger is not None:
            # повторная настройка (тесты, uvicorn reload) меняет только уровень
            cls._logger.setLevel(int(level))
            return

        logging.basicConfig(level=int(level), format=fmt)
        for handler in logging.getLogger().handlers:
            if not any(isinstance(f, PaymentContextFilter) for f in handler.filters):
                handler.addFilter(PaymentContextFilter())
        cls._logger = logging.getLogger(name)
        cls._logger.setLevel(int(level))

    @classmethod
    def get(cls) -> logging.Logger:
        if cls._logger is None:
            return logging.getLogger(FALLBACK_NAME)
        return cls._logger

    @classmethod
    @contextmanager
    def payment(cls, external_reference: str) -> Iterator[None]:
        token = _current_payment.set(external_reference)
        try:
            yield
        finally:
            _current_payment.reset(token)

    @classmethod
    def current_payment(cls) -> str:
        return _current_payment.get()

    @classmethod
    def log(cls, level: Level | int, msg: str, *args, **kwargs) -> None:
        cls.get().log(int(level), msg, *args, **kwargs)

    @classmethod
    def debug(cls, msg: str, *args, **kwargs) -> None:
        cls.get().debug(msg, *args, **kwargs)

    @classmethod
    def info(cls, msg: str, *args, **kwargs) -> None:
        cls.get().info(msg, *args, **kwargs)

    @classmethod
    def warning(cls, msg: str, *args, **kwargs) -> None:
        cls.get().warning(msg, *args, **kwargs)

    @classmethod
    def error(cls, msg: str, *args, **kwargs) -> None:
        cls.get().error(msg, *args, **kwargs)

    @classmethod
    def exception(cls, msg: str, *args, exc_info: bool = True, **kwargs) -> None:
        cls.get().exception(msg, *args, exc_info=exc_info, **kwargs)

    @classmethod
    def silence(cls, *logger_names: str, level: Level | int = Level.CRITICAL) -> None:
        for n in logger_names:
            logging.getLogger(n).setLevel(int(level))
