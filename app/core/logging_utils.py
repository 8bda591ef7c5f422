import logging
import json
import os
import re
import sys
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, Optional

# Atributos padrão de LogRecord que não devem ir para o JSON como "extra"
_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName',
})

# Chaves de API que eventualmente aparecem em mensagens de erro dos providers
_SECRET_PATTERNS = [
    re.compile(r"(sk-[A-Za-z0-9_\-]{8})[A-Za-z0-9_\-]+"),
    re.compile(r"(AIza[A-Za-z0-9_\-]{4})[A-Za-z0-9_\-]+"),
    re.compile(r"(key=)[A-Za-z0-9_\-]+"),
]


def redact_secrets(text: str) -> str:
    """Mascara trechos que parecem API keys (mantém só o prefixo)."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1***", text)
    return text


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per line.
    """
    def __init__(self, service: str = "credential-router"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": redact_secrets(record.getMessage()),
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = redact_secrets(self.formatException(record.exc_info))

        # Atributos passados via extra={}
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith('_'):
                continue
            log_obj[key] = value

        return json.dumps(log_obj, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = "logs"):
    """
    Configura o root logger: JSON no stdout e em arquivo diário.

    Logs são salvos em:
    - Console: stdout (formato JSON)
    - Arquivo: <log_dir>/router_YYYYMMDD.log (omitido se log_dir=None)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    formatter = JSONFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_filename = None
    if log_dir:
        logs_dir = Path(log_dir)
        logs_dir.mkdir(exist_ok=True)
        log_filename = logs_dir / f"router_{datetime.now().strftime('%Y%m%d')}.log"

        file_handler = logging.FileHandler(log_filename, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logger = logging.getLogger(__name__)
    if log_filename:
        logger.info(f"📝 Logs sendo salvos em: {log_filename.absolute()}")

    # Bibliotecas de terceiros muito verbosas
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
