import json
import logging
import logging.config
from pathlib import Path
from typing import Dict, Any

# 通过 logger.info(..., extra={...}) 透传到 JSON 日志中的上下文字段
CONTEXT_FIELDS = ("knowledge_id", "session_id", "username")

# 第三方库降噪
NOISY_LOGGERS = {
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "urllib3": "WARNING",
    "multipart": "WARNING",
    "watchfiles": "WARNING",
    "pypdf": "ERROR",
    "elasticsearch": "ERROR",
    "elastic_transport": "ERROR",
    "arq.jobs": "WARNING",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "lineno": record.lineno,
        }
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record[field] = str(getattr(record, field))
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, ensure_ascii=False)


def get_logging_config(log_file_path: str, log_level: str = "INFO") -> Dict[str, Any]:
    log_path = Path(log_file_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    app_logger = {
        'level': 'DEBUG',
        'handlers': ['console', 'file'],
        'propagate': False
    }

    loggers: Dict[str, Any] = {
        '': {
            'level': log_level,
            'handlers': ['console', 'file'],
        },
        'docvault': app_logger,
        # arq worker 自带的任务日志也走同一套 handler
        'arq': {
            'level': 'INFO',
            'handlers': ['console', 'file'],
            'propagate': False
        },
        'uvicorn': {
            'level': 'INFO',
            'handlers': ['console', 'file'],
            'propagate': False
        },
        'uvicorn.access': {
            'level': 'WARNING',
            'handlers': ['console', 'file'],
            'propagate': False
        },
    }
    loggers.update({name: {'level': level} for name, level in NOISY_LOGGERS.items()})

    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'standard': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S'
            },
            'json': {
                '()': JsonFormatter,
                'datefmt': '%Y-%m-%d %H:%M:%S'
            },
        },
        'handlers': {
            'console': {
                'class': 'rich.logging.RichHandler',
                'level': log_level,
                'formatter': 'standard',
                'rich_tracebacks': True,
                'show_path': False,
                'markup': False
            },
            'file': {
                'class': 'logging.handlers.RotatingFileHandler',
                'level': 'DEBUG',
                'formatter': 'json',
                'filename': str(log_path),
                'mode': 'a',
                'maxBytes': 10 * 1024 * 1024,
                'backupCount': 5,
                'encoding': 'utf-8'
            }
        },
        'loggers': loggers,
    }


def setup_logging(log_file_path: str, log_level: str = "INFO"):
    """
    初始化日志配置 (API 进程与 Worker 进程共用)。
    重复调用时先移除旧的 root handler，避免日志重复输出。
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    logging.config.dictConfig(get_logging_config(log_file_path, log_level))
