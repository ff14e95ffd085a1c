import logging.config
import sys
from typing import Any, Dict

# 서비스 코드 로거 (creditsync.*), 결제사/DB 드라이버는 소음이 크므로 별도 레벨
APP_LOGGERS = ("creditsync", "uvicorn.error")
QUIET_LOGGERS = {"stripe": "WARNING", "sqlalchemy.engine": "WARNING"}


def _logger(handlers, level: str) -> Dict[str, Any]:
    return {"handlers": list(handlers), "level": level, "propagate": False}


def build_logging_config(log_level: str = "INFO") -> Dict[str, Any]:
    level = log_level.upper()
    loggers: Dict[str, Any] = {
        "": {"handlers": ["stdout"], "level": level},
        "uvicorn.access": _logger(["stdout"], level),
    }
    for name in APP_LOGGERS:
        loggers[name] = _logger(["stdout", "stderr_warnings"], level)
    for name, quiet_level in QUIET_LOGGERS.items():
        loggers[name] = _logger(["stdout"], quiet_level)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "line": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s",
            },
            "located": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)s "
                "(%(module)s:%(lineno)d)\n%(message)s",
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "line",
                "stream": sys.stdout,
            },
            # 경고 이상은 위치 정보와 함께 stderr 에도 기록
            "stderr_warnings": {
                "class": "logging.StreamHandler",
                "formatter": "located",
                "stream": sys.stderr,
                "level": "WARNING",
            },
        },
        "loggers": loggers,
    }


def setup_logging(log_level: str = "INFO") -> None:
    logging.config.dictConfig(build_logging_config(log_level))
