import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import keyring
from keyring.errors import KeyringError
import yaml
from jsonschema import Draft7Validator

from .path_config import BASE_DIR, CONFIG_DIR as DEFAULT_CONFIG_DIR, LOG_DIR

CONFIG_FILE_ENV = os.getenv("GERENCIADOR_REDSHIFT_CONFIG_FILE")
if CONFIG_FILE_ENV:
    CONFIG_FILE = Path(CONFIG_FILE_ENV)
    if not CONFIG_FILE.is_absolute():
        CONFIG_FILE = BASE_DIR / CONFIG_FILE
    CONFIG_DIR = CONFIG_FILE.parent
else:
    CONFIG_DIR = DEFAULT_CONFIG_DIR
    CONFIG_FILE = CONFIG_DIR / "config.yml"

KEYRING_SERVICE = "gerenciador_redshift"

DEFAULT_CONFIG = {
    "host": "localhost",
    "port": 5439,
    "user": "root",
    "database": "dev",
    "sslmode": "require",
    "max_connections": 20,
    "connect_timeout": 180,
    "retry_max_attempts": 10,
    "retry_base_delay": 1.0,
    "log_path": str(LOG_DIR / "app.log"),
    "log_level": "INFO",
}

# Variáveis de ambiente que sobrepõem chaves do arquivo
ENV_OVERRIDES = {
    "REDSHIFT_HOST": ("host", str),
    "REDSHIFT_PORT": ("port", int),
    "REDSHIFT_USER": ("user", str),
    "REDSHIFT_DATABASE": ("database", str),
    "REDSHIFT_SSLMODE": ("sslmode", str),
}

CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Configuração do gerenciador",
    "type": "object",
    "properties": {
        "host": {"type": "string", "minLength": 1},
        "port": {"type": "integer", "minimum": 1, "maximum": 65535},
        "user": {"type": "string", "minLength": 1},
        "database": {"type": "string", "minLength": 1},
        "sslmode": {
            "type": "string",
            "enum": ["require", "disable", "verify-ca", "verify-full"],
        },
        "max_connections": {"type": "integer", "minimum": -1},
        "connect_timeout": {"type": "integer", "minimum": 0},
        "retry_max_attempts": {"type": "integer", "minimum": 1},
        "retry_base_delay": {"type": "number", "minimum": 0},
        "log_path": {"type": "string"},
        "log_level": {
            "type": "string",
            "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL",
                     "debug", "info", "warning", "error", "critical"],
        },
    },
    "required": ["host", "port", "user", "database"],
    "not": {"required": ["password"]},
}

logger = logging.getLogger(__name__)
logger.propagate = True


def _apply_env_overrides(cfg: dict) -> dict:
    for env_name, (key, cast) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            try:
                cfg[key] = cast(value)
            except ValueError:
                logger.warning("Valor inválido em %s: %s", env_name, value)
    return cfg


def load_config(path: str | Path | None = None):
    config_file = Path(path) if path else CONFIG_FILE
    if not config_file.exists():
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.safe_dump(DEFAULT_CONFIG, f, allow_unicode=True)
        return _apply_env_overrides(DEFAULT_CONFIG.copy())
    with open(config_file, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning("Failed to parse %s: %s", config_file, e)
            with open(config_file, 'w', encoding='utf-8') as fw:
                yaml.safe_dump(DEFAULT_CONFIG, fw, allow_unicode=True)
            return _apply_env_overrides(DEFAULT_CONFIG.copy())
    result = {**DEFAULT_CONFIG, **data}
    log_path = result.get('log_path')
    if log_path:
        log_path_path = Path(log_path)
        if not log_path_path.is_absolute():
            log_path_path = BASE_DIR / log_path_path
        result['log_path'] = str(log_path_path)
    return _apply_env_overrides(result)


def save_config(data):
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_FILE, 'w', encoding='utf-8') as f:
        yaml.safe_dump(data, f, allow_unicode=True)


def validate_config(cfg: dict) -> None:
    """Validates configuration structure and values.

    Raises ValueError with collected errors when invalid. Emits warnings for
    non-fatal issues such as absolute log paths outside ``BASE_DIR``.
    """

    validator = Draft7Validator(CONFIG_SCHEMA)
    errors = []
    for error in sorted(validator.iter_errors(cfg), key=lambda e: list(e.path)):
        where = ".".join(str(p) for p in error.path) or "config"
        if error.validator == "not":
            errors.append("A configuração não deve conter password")
        else:
            errors.append(f"{where}: {error.message}")

    log_path = cfg.get("log_path")
    if log_path:
        p = Path(log_path)
        if p.is_absolute() and not str(p).startswith(str(BASE_DIR)):
            logger.warning("log_path fora de BASE_DIR: %s", log_path)

    if errors:
        raise ValueError("\n".join(errors))


def env_var_for_profile(profile_name: str) -> str:
    slug = "".join(c if c.isalnum() else "_" for c in profile_name).upper().strip("_")
    return f"{slug}_PASSWORD"


def resolve_password(host: str, user: str, profile_name: str | None = None) -> str | None:
    """Resolve a senha em ordem de precedência:
    1. Variável de ambiente ``REDSHIFT_PASSWORD``
    2. Variável de ambiente específica do perfil (ex: PROD_PASSWORD)
    3. Entrada no keyring para a combinação host::usuário
    4. Entrada no keyring somente pelo usuário
    """
    password = os.getenv("REDSHIFT_PASSWORD")
    if password:
        return password
    if profile_name:
        password = os.getenv(env_var_for_profile(profile_name))
        if password:
            return password
    try:
        host_key = keyring.get_password(KEYRING_SERVICE, f"{host}::{user}")
        if host_key:
            return host_key
        return keyring.get_password(KEYRING_SERVICE, user)
    except KeyringError as e:
        logger.warning("Keyring indisponível: %s", e)
        return None


@dataclass
class ProviderConfig:
    """Parâmetros de conexão com o cluster."""

    host: str
    user: str
    port: int = 5439
    database: str = "dev"
    sslmode: str = "require"
    password: Optional[str] = None
    max_connections: int = 20
    connect_timeout: int = 180
    retry_max_attempts: int = 10
    retry_base_delay: float = 1.0

    @classmethod
    def from_dict(cls, cfg: dict, profile_name: str | None = None) -> "ProviderConfig":
        validate_config(cfg)
        password = resolve_password(cfg["host"], cfg["user"], profile_name)
        return cls(
            host=cfg["host"],
            user=cfg["user"],
            port=int(cfg.get("port", 5439)),
            database=cfg.get("database", "dev"),
            sslmode=cfg.get("sslmode", "require"),
            password=password,
            max_connections=int(cfg.get("max_connections", 20)),
            connect_timeout=int(cfg.get("connect_timeout", 180)),
            retry_max_attempts=int(cfg.get("retry_max_attempts", 10)),
            retry_base_delay=float(cfg.get("retry_base_delay", 1.0)),
        )

    def dsn(self, database: str | None = None) -> str:
        """Return the connection URL for *database* (defaults to ``self.database``)."""
        return (
            f"postgres://{quote(self.user, safe='')}:{quote(self.password or '', safe='')}"
            f"@{self.host}:{self.port}/{database or self.database}"
            f"?sslmode={quote(self.sslmode, safe='')}&connect_timeout={self.connect_timeout}"
        )
