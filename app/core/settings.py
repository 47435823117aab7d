import os
from dataclasses import dataclass, field


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    try:
        return max(minimum, int(os.getenv(name, str(default))))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        return max(minimum, float(os.getenv(name, str(default))))
    except ValueError:
        return default


def _backoff_schedule(raw: str) -> list[int]:
    delays: list[int] = []
    for item in _split_csv(raw):
        try:
            delays.append(max(0, int(item)))
        except ValueError:
            continue
    return delays or [200, 500, 1000]


@dataclass
class Settings:
    app_env: str
    llm_base_url: str
    llm_model: str
    llm_temperature: float
    llm_top_p: float
    llm_max_tokens: int
    llm_stop_sequences: list[str]
    llm_connect_timeout_sec: float
    llm_timeout_sec: float
    llm_stream_timeout_sec: float
    llm_probe_connect_timeout_sec: float
    llm_probe_timeout_sec: float
    llm_max_attempts: int
    llm_backoff_ms: list[int]
    chat_max_message_chars: int
    chat_prompt_max_chars: int
    chat_prompt_max_list_items: int
    chat_history_max_turns: int
    chat_snapshot_ttl_sec: int
    chat_student_row_cap: int
    chat_row_cap: int
    chat_storage_timeout_sec: float
    mysql_host: str
    mysql_port: int
    mysql_user: str
    mysql_password: str
    mysql_database: str
    mysql_connect_timeout_sec: float
    redis_url: str
    cors_allow_origins: list[str] = field(default_factory=list)

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def load_settings() -> Settings:
    return Settings(
        app_env=os.getenv("APP_ENV", "production").strip().lower() or "production",
        llm_base_url=os.getenv("LLM_BASE_URL", "http://localhost:11434").rstrip("/"),
        llm_model=os.getenv("LLM_MODEL", "qwen2.5:7b").strip() or "qwen2.5:7b",
        llm_temperature=_env_float("LLM_TEMPERATURE", 0.1),
        llm_top_p=_env_float("LLM_TOP_P", 0.9),
        llm_max_tokens=_env_int("LLM_MAX_TOKENS", 256, minimum=1),
        llm_stop_sequences=_split_csv(os.getenv("LLM_STOP_SEQUENCES", "")),
        llm_connect_timeout_sec=_env_float("LLM_CONNECT_TIMEOUT_SEC", 5.0, minimum=0.1),
        llm_timeout_sec=_env_float("LLM_TIMEOUT_SEC", 55.0, minimum=0.1),
        llm_stream_timeout_sec=_env_float("LLM_STREAM_TIMEOUT_SEC", 115.0, minimum=0.1),
        llm_probe_connect_timeout_sec=_env_float("LLM_PROBE_CONNECT_TIMEOUT_SEC", 2.0, minimum=0.1),
        llm_probe_timeout_sec=_env_float("LLM_PROBE_TIMEOUT_SEC", 3.0, minimum=0.1),
        llm_max_attempts=_env_int("LLM_MAX_ATTEMPTS", 3, minimum=1),
        llm_backoff_ms=_backoff_schedule(os.getenv("LLM_BACKOFF_MS", "200,500,1000")),
        chat_max_message_chars=_env_int("CHAT_MAX_MESSAGE_CHARS", 2000, minimum=1),
        chat_prompt_max_chars=_env_int("CHAT_PROMPT_MAX_CHARS", 6000, minimum=1000),
        chat_prompt_max_list_items=_env_int("CHAT_PROMPT_MAX_LIST_ITEMS", 10, minimum=1),
        chat_history_max_turns=_env_int("CHAT_HISTORY_MAX_TURNS", 10),
        chat_snapshot_ttl_sec=_env_int("CHAT_SNAPSHOT_TTL_SEC", 900, minimum=1),
        chat_student_row_cap=_env_int("CHAT_STUDENT_ROW_CAP", 100, minimum=1),
        chat_row_cap=_env_int("CHAT_ROW_CAP", 200, minimum=1),
        chat_storage_timeout_sec=_env_float("CHAT_STORAGE_TIMEOUT_SEC", 5.0, minimum=0.1),
        mysql_host=os.getenv("MYSQL_HOST", "127.0.0.1").strip(),
        mysql_port=_env_int("MYSQL_PORT", 3306, minimum=1),
        mysql_user=os.getenv("MYSQL_USER", "attendance").strip(),
        mysql_password=os.getenv("MYSQL_PASSWORD", "attendance"),
        mysql_database=os.getenv("MYSQL_DATABASE", "attendance").strip(),
        mysql_connect_timeout_sec=_env_float("MYSQL_CONNECT_TIMEOUT_SEC", 3.0, minimum=0.1),
        redis_url=os.getenv("REDIS_URL", "").strip(),
        cors_allow_origins=_split_csv(os.getenv("CORS_ALLOW_ORIGINS", "")),
    )


SETTINGS = load_settings()
