import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from .path_config import BASE_DIR, LOG_DIR
from .config_manager import load_config


def setup_logger(cfg: dict | None = None):
    """Configure o logger raiz para arquivo e console.

    Lê as configurações de ``config.yml`` (ou do dicionário *cfg*) e ajusta o
    *logger* raiz para que todos os módulos obtenham *loggers* específicos
    via ``logging.getLogger(__name__)`` compartilhando a mesma configuração.
    """

    if cfg is None:
        try:
            cfg = load_config()
        except OSError:
            cfg = {"log_path": str(LOG_DIR / "app.log"), "log_level": "INFO"}

    log_path = Path(cfg.get("log_path", LOG_DIR / "app.log"))
    log_path = log_path if log_path.is_absolute() else BASE_DIR / log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_level = getattr(logging, str(cfg.get("log_level", "INFO")).upper(), logging.INFO)

    logger = logging.getLogger()  # logger raiz
    logger.setLevel(log_level)

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    file_handler = RotatingFileHandler(
        log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(log_level)
    stream_handler.setFormatter(formatter)

    logger.handlers.clear()
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)

    # keyring é verborrágico em DEBUG
    for mod in ("keyring", "keyring.backend"):
        logging.getLogger(mod).setLevel(logging.WARNING)

    return logger
